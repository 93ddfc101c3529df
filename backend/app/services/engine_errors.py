"""
Typed error taxonomy for the bracket & match engine.

Every failed operation raises one of these before anything is written (or
after rolling back), so stored state is unchanged. Routes render them through
a single exception handler registered in app.main.

StaleState is the only error callers are expected to retry (after re-reading
the match); everything else is a caller or business-rule mistake.
"""
from typing import Optional


class EngineError(Exception):
    code = "ENGINE_ERROR"
    http_status = 422

    def __init__(self, message: str, *, match_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.match_id = match_id

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.message, "match_id": self.match_id}


class OutOfTurn(EngineError):
    code = "OUT_OF_TURN"


class InvalidMap(EngineError):
    code = "INVALID_MAP"


class InvalidTransition(EngineError):
    code = "INVALID_TRANSITION"


class StaleState(EngineError):
    code = "STALE_STATE"
    http_status = 409


class Unauthorized(EngineError):
    code = "UNAUTHORIZED"
    http_status = 403


class InsufficientRoster(EngineError):
    code = "INSUFFICIENT_ROSTER"


class InsufficientTeams(EngineError):
    code = "INSUFFICIENT_TEAMS"


class TieScoreRejected(EngineError):
    code = "TIE_SCORE_REJECTED"


class DuplicateDispute(EngineError):
    code = "DUPLICATE_DISPUTE"


class InvalidFormat(EngineError):
    code = "INVALID_FORMAT"


class DuplicateTeam(EngineError):
    code = "DUPLICATE_TEAM"


class InvalidScore(EngineError):
    code = "INVALID_SCORE"


class InvalidSide(EngineError):
    code = "INVALID_SIDE"


class SlotOccupied(EngineError):
    code = "SLOT_OCCUPIED"
    http_status = 409


class NotFound(EngineError):
    code = "NOT_FOUND"
    http_status = 404
