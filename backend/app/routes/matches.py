"""
Match runtime: the per-match protocol for participants.

Every mutating call carries the match version the client last read
(expected_version). A 409 STALE_STATE response means re-read and retry.
Completion triggers advancement; the response includes what moved.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session

from app.database import get_session
from app.models.match import Match
from app.services import match_service
from app.services.match_service import TransitionResult
from app.services.match_state_machine import allowed_actions
from app.utils.actor import Actor, get_actor
from app.utils.version_guards import require_match

router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================


class MatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    bracket: str
    round_number: int
    match_number: int
    best_of: str
    team1_id: Optional[int] = None
    team2_id: Optional[int] = None
    match_state: str
    version: int
    team1_ready: bool
    team2_ready: bool
    ready_deadline: Optional[datetime] = None
    map_pool: List[str]
    veto_first_slot: int
    veto_attempt: int
    selected_maps: Optional[List[str]] = None
    side_chooser_team_id: Optional[int] = None
    team1_side: Optional[str] = None
    team2_side: Optional[str] = None
    team1_submission: Optional[Dict[str, Any]] = None
    team2_submission: Optional[Dict[str, Any]] = None
    team1_score: Optional[int] = None
    team2_score: Optional[int] = None
    winner_team_id: Optional[int] = None
    is_complete: bool
    is_bye: bool
    forfeit: bool
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class MatchDetailResponse(MatchResponse):
    allowed_actions: List[str] = []


class MatchActionResponse(BaseModel):
    match: MatchResponse
    advancement: Optional[Dict[str, Any]] = None


class VersionedRequest(BaseModel):
    expected_version: int


class TeamActionRequest(VersionedRequest):
    team_id: int


class OpenReadyUpRequest(VersionedRequest):
    team_id: Optional[int] = None


class BanMapRequest(TeamActionRequest):
    map_name: str


class ChooseSideRequest(TeamActionRequest):
    side: str


class SubmitScoreRequest(TeamActionRequest):
    team1_score: int
    team2_score: int


class FlagDisputeRequest(TeamActionRequest):
    team1_score: int
    team2_score: int
    note: Optional[str] = None


class VetoEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    team_id: int
    action: str
    map_name: str
    created_at: datetime


class VetoStateResponse(BaseModel):
    match_id: int
    version: int
    match_state: str
    attempt: int
    acting_team_id: Optional[int] = None
    remaining_maps: List[str]
    bans_made: int
    bans_needed: int
    complete: bool
    selected_maps: Optional[List[str]] = None
    entries: List[VetoEntryResponse]


def to_action_response(result: TransitionResult) -> MatchActionResponse:
    return MatchActionResponse(
        match=MatchResponse.model_validate(result.match),
        advancement=result.advancement.to_dict() if result.advancement else None,
    )


def to_detail_response(match: Match) -> MatchDetailResponse:
    detail = MatchDetailResponse.model_validate(match)
    detail.allowed_actions = [a.value for a in allowed_actions(match.state)]
    return detail


# ============================================================================
# Endpoints
# ============================================================================


@router.get("/matches/{match_id}", response_model=MatchDetailResponse)
def get_match(match_id: int, session: Session = Depends(get_session)):
    """Current match state, version, and the actions legal right now."""
    return to_detail_response(require_match(session, match_id))


@router.get("/matches/{match_id}/veto", response_model=VetoStateResponse)
def get_veto_state(match_id: int, session: Session = Depends(get_session)):
    """Veto transcript for the current attempt and whose turn it is."""
    match = require_match(session, match_id)
    turn, entries = match_service.veto_status(session, match_id)
    return VetoStateResponse(
        match_id=match.id,
        version=match.version,
        match_state=match.match_state,
        attempt=match.veto_attempt,
        acting_team_id=turn.acting_team_id,
        remaining_maps=turn.remaining_maps,
        bans_made=turn.bans_made,
        bans_needed=turn.bans_needed,
        complete=turn.complete,
        selected_maps=match.selected_maps,
        entries=[VetoEntryResponse.model_validate(e) for e in entries],
    )


@router.post("/matches/{match_id}/ready-up", response_model=MatchActionResponse)
def open_ready_up(
    match_id: int,
    request: OpenReadyUpRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    """Open the ready-up window (participant captain or admin)."""
    result = match_service.open_ready_up(session, match_id, actor, request.expected_version, team_id=request.team_id)
    return to_action_response(result)


@router.post("/matches/{match_id}/ready", response_model=MatchActionResponse)
def set_ready(
    match_id: int,
    request: TeamActionRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    result = match_service.set_ready(session, match_id, actor, request.team_id, request.expected_version)
    return to_action_response(result)


@router.post("/matches/{match_id}/unready", response_model=MatchActionResponse)
def set_unready(
    match_id: int,
    request: TeamActionRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    result = match_service.set_unready(session, match_id, actor, request.team_id, request.expected_version)
    return to_action_response(result)


@router.post("/matches/{match_id}/ban", response_model=MatchActionResponse)
def ban_map(
    match_id: int,
    request: BanMapRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    result = match_service.ban_map(
        session, match_id, actor, request.team_id, request.map_name, request.expected_version
    )
    return to_action_response(result)


@router.post("/matches/{match_id}/side", response_model=MatchActionResponse)
def choose_side(
    match_id: int,
    request: ChooseSideRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    result = match_service.choose_side(session, match_id, actor, request.team_id, request.side, request.expected_version)
    return to_action_response(result)


@router.post("/matches/{match_id}/score", response_model=MatchActionResponse)
def submit_score(
    match_id: int,
    request: SubmitScoreRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    """
    Report the series result from one team's side.

    Matching reports complete the match; conflicting reports open a dispute.
    """
    result = match_service.submit_score(
        session,
        match_id,
        actor,
        request.team_id,
        request.team1_score,
        request.team2_score,
        request.expected_version,
    )
    return to_action_response(result)


@router.post("/matches/{match_id}/dispute", response_model=MatchActionResponse)
def flag_dispute(
    match_id: int,
    request: FlagDisputeRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    """Contest the opponent's report with a different score of your own."""
    result = match_service.flag_dispute(
        session,
        match_id,
        actor,
        request.team_id,
        request.team1_score,
        request.team2_score,
        request.note,
        request.expected_version,
    )
    return to_action_response(result)


@router.post("/matches/{match_id}/ready-timeout", response_model=MatchActionResponse)
def expire_ready_timeout(
    match_id: int,
    request: VersionedRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    """Claim a forfeit once the ready-up deadline has passed."""
    result = match_service.expire_ready_timeout(session, match_id, request.expected_version)
    return to_action_response(result)
