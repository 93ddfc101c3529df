"""
Admin console: disputes, overrides and repair tools.

Every endpoint requires X-User-Role: admin. Admin match overrides go
through the same versioned transitions as team actions.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, field_validator
from sqlmodel import Session

from app.database import get_session
from app.models.tournament import Tournament, TournamentFormat
from app.routes.matches import MatchActionResponse, VersionedRequest, to_action_response
from app.routes.teams import REGISTRATION_STATUSES, TeamResponse
from app.routes.tournaments import BracketBuildResponse
from app.services import match_service
from app.services.advancement_service import resolve_all_completions
from app.services.bracket_builder import create_final_bracket
from app.services.dispute_resolver import DisputeDecision, list_disputes, resolve
from app.services.engine_errors import Unauthorized
from app.utils.actor import Actor, get_actor
from app.utils.seeding import generate_test_teams

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise Unauthorized(f"User {actor.user_id} is not an admin")
    return actor


# ============================================================================
# Request/Response Models
# ============================================================================


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    match_id: int
    tournament_id: int
    reason: str
    raised_by: str
    note: Optional[str] = None
    team1_submission: Optional[Dict[str, Any]] = None
    team2_submission: Optional[Dict[str, Any]] = None
    status: str
    admin_id: Optional[str] = None
    resolution_note: Optional[str] = None
    final_team1_score: Optional[int] = None
    final_team2_score: Optional[int] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None


class ResolveDisputeRequest(VersionedRequest):
    decision: DisputeDecision
    team1_score: Optional[int] = None
    team2_score: Optional[int] = None
    note: Optional[str] = None


class ForfeitRequest(VersionedRequest):
    winner_team_id: int
    note: Optional[str] = None


class CancelRequest(VersionedRequest):
    note: Optional[str] = None


class VetoOrderRequest(VersionedRequest):
    first_team_id: int


class SweepResponse(BaseModel):
    expired: List[int]
    needs_admin: List[int]
    skipped_stale: List[int]


class FinalBracketRequest(BaseModel):
    qualifier_count: int = 8
    format: str = TournamentFormat.single_elimination.value
    name: Optional[str] = None


class FinalBracketResponse(BracketBuildResponse):
    qualified_team_ids: List[int]


class TestTeamsRequest(BaseModel):
    count: int = 8
    random_seed: int = 0

    @field_validator("count")
    @classmethod
    def validate_count(cls, v):
        if v < 1 or v > 128:
            raise ValueError("count must be between 1 and 128")
        return v


# ============================================================================
# Disputes
# ============================================================================


@router.get("/disputes", response_model=List[DisputeResponse])
def get_disputes(
    status: Optional[str] = Query(default=None),
    tournament_id: Optional[int] = Query(default=None),
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    return list_disputes(session, status=status, tournament_id=tournament_id)


@router.post("/matches/{match_id}/resolve-dispute", response_model=MatchActionResponse)
def resolve_dispute(
    match_id: int,
    request: ResolveDisputeRequest,
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """dismiss: teams resubmit. override: impose the final score."""
    result = resolve(
        session,
        match_id,
        admin,
        request.decision,
        request.expected_version,
        team1_score=request.team1_score,
        team2_score=request.team2_score,
        note=request.note,
    )
    return to_action_response(result)


# ============================================================================
# Match overrides
# ============================================================================


@router.post("/matches/{match_id}/forfeit", response_model=MatchActionResponse)
def force_forfeit(
    match_id: int,
    request: ForfeitRequest,
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    result = match_service.force_forfeit(
        session, match_id, admin, request.winner_team_id, request.expected_version, note=request.note
    )
    return to_action_response(result)


@router.post("/matches/{match_id}/cancel", response_model=MatchActionResponse)
def cancel_match(
    match_id: int,
    request: CancelRequest,
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Reset an in-flight match to scheduled. Veto history of the old attempt is kept."""
    result = match_service.cancel_match(session, match_id, admin, request.expected_version, note=request.note)
    return to_action_response(result)


@router.post("/matches/{match_id}/veto-order", response_model=MatchActionResponse)
def set_veto_order(
    match_id: int,
    request: VetoOrderRequest,
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Choose which team bans first. Only before the first ban."""
    result = match_service.set_veto_order(session, match_id, admin, request.first_team_id, request.expected_version)
    return to_action_response(result)


# ============================================================================
# Repair & dev tools
# ============================================================================


@router.post("/ready-timeouts/sweep", response_model=SweepResponse)
def sweep_ready_timeouts(
    tournament_id: Optional[int] = Query(default=None),
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Forfeit every expired ready-up. Matches where nobody readied are listed for manual action."""
    result = match_service.expire_ready_timeouts(session, tournament_id=tournament_id)
    return SweepResponse(expired=result.expired, needs_admin=result.needs_admin, skipped_stale=result.skipped_stale)


@router.post("/tournaments/{tournament_id}/replay-advancement")
def replay_advancement(
    tournament_id: int,
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Re-run advancement for every completed match. Idempotent."""
    if not session.get(Tournament, tournament_id):
        raise HTTPException(status_code=404, detail="Tournament not found")
    return resolve_all_completions(session, tournament_id)


@router.post("/tournaments/{tournament_id}/test-teams", response_model=List[TeamResponse], status_code=201)
def create_test_teams(
    tournament_id: int,
    request: TestTeamsRequest,
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """DEV-ONLY: register throwaway teams with full rosters."""
    tournament = session.get(Tournament, tournament_id)
    if not tournament:
        raise HTTPException(status_code=404, detail="Tournament not found")
    if tournament.status not in REGISTRATION_STATUSES:
        raise HTTPException(status_code=409, detail="Registration is closed for this tournament")
    return generate_test_teams(session, tournament_id, request.count, request.random_seed)


@router.post(
    "/tournaments/{tournament_id}/final-bracket", response_model=FinalBracketResponse, status_code=201
)
def generate_final_bracket(
    tournament_id: int,
    request: FinalBracketRequest,
    admin: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
):
    """Force-generate the playoff bracket from the Swiss stage's current top teams."""
    logger.info(f"Admin {admin.user_id} generating final bracket from tournament {tournament_id}")
    return create_final_bracket(
        session, tournament_id, qualifier_count=request.qualifier_count, format=request.format, name=request.name
    )
