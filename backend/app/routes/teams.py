"""
Team Registration API Routes

Thin boundary to team registration: the engine only needs a team reference
with a tag, a captain, a roster and the five active players. Teams can be
added until the bracket is built.
"""

import re
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, or_, select

from app.database import get_session
from app.models.match import Match
from app.models.team import ACTIVE_ROSTER_SIZE, MAX_TAG_LENGTH, ROSTER_ROLES, Team
from app.models.tournament import Tournament, TournamentStatus

router = APIRouter()

TAG_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
REGISTRATION_STATUSES = (TournamentStatus.draft.value, TournamentStatus.registration_open.value)


# ============================================================================
# Request/Response Models
# ============================================================================


class RosterEntry(BaseModel):
    user_id: str
    role: str = "member"

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in ROSTER_ROLES:
            raise ValueError(f"role must be one of {', '.join(ROSTER_ROLES)}")
        return v


class TeamCreateRequest(BaseModel):
    name: str
    tag: str
    captain_user_id: str
    roster: List[RosterEntry]
    active_player_ids: Optional[List[str]] = None  # defaults to the first five roster entries
    seed: Optional[int] = None

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v):
        v = v.strip()
        if not v or len(v) > MAX_TAG_LENGTH or not TAG_PATTERN.match(v):
            raise ValueError(f"tag must be 1-{MAX_TAG_LENGTH} letters or digits")
        return v

    @field_validator("seed")
    @classmethod
    def validate_seed(cls, v):
        if v is not None and v < 1:
            raise ValueError("seed must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_roster(self):
        member_ids = [m.user_id for m in self.roster]
        if len(set(member_ids)) != len(member_ids):
            raise ValueError("roster contains duplicate users")
        if self.captain_user_id not in member_ids:
            raise ValueError("captain must be on the roster")
        active = self.active_player_ids if self.active_player_ids is not None else member_ids[:ACTIVE_ROSTER_SIZE]
        if len(active) != ACTIVE_ROSTER_SIZE or len(set(active)) != ACTIVE_ROSTER_SIZE:
            raise ValueError(f"exactly {ACTIVE_ROSTER_SIZE} distinct active players are required")
        if any(uid not in member_ids for uid in active):
            raise ValueError("active players must be on the roster")
        self.active_player_ids = active
        return self


class ActivePlayersRequest(BaseModel):
    active_player_ids: List[str]


class TeamResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    name: str
    tag: str
    captain_user_id: str
    roster: List[RosterEntry]
    active_player_ids: List[str]
    registered: bool
    seed: Optional[int] = None
    created_at: datetime


# ============================================================================
# Team Endpoints
# ============================================================================


@router.get("/tournaments/{tournament_id}/teams", response_model=List[TeamResponse])
def get_teams(tournament_id: int, session: Session = Depends(get_session)):
    """
    Get all teams for a tournament.

    Order: seed ascending (nulls last), then id.
    """
    tournament = session.get(Tournament, tournament_id)
    if not tournament:
        raise HTTPException(status_code=404, detail="Tournament not found")

    teams = session.exec(select(Team).where(Team.tournament_id == tournament_id)).all()
    return sorted(teams, key=lambda t: (t.seed is None, t.seed or 0, t.id))


@router.post("/tournaments/{tournament_id}/teams", response_model=TeamResponse, status_code=201)
def create_team(tournament_id: int, request: TeamCreateRequest, session: Session = Depends(get_session)):
    """
    Register a team for a tournament.

    Constraints:
    - tag unique within the tournament (case-insensitive)
    - (tournament_id, seed) unique if seed is not null
    """
    tournament = session.get(Tournament, tournament_id)
    if not tournament:
        raise HTTPException(status_code=404, detail="Tournament not found")
    if tournament.status not in REGISTRATION_STATUSES:
        raise HTTPException(status_code=409, detail="Registration is closed for this tournament")

    tag = request.tag.upper()
    clash = session.exec(select(Team).where(Team.tournament_id == tournament_id, Team.tag == tag)).first()
    if clash:
        raise HTTPException(status_code=409, detail=f"Team with tag '{tag}' already exists for this tournament")

    team = Team(
        tournament_id=tournament_id,
        name=request.name,
        tag=tag,
        captain_user_id=request.captain_user_id,
        roster=[m.model_dump() for m in request.roster],
        active_player_ids=list(request.active_player_ids),
        seed=request.seed,
    )
    try:
        session.add(team)
        session.commit()
        session.refresh(team)
        return team
    except IntegrityError as e:
        session.rollback()
        if "seed" in str(e.orig):
            raise HTTPException(
                status_code=409, detail=f"Team with seed {request.seed} already exists for this tournament"
            )
        raise HTTPException(status_code=409, detail=f"Team with tag '{tag}' already exists for this tournament")


@router.put("/teams/{team_id}/active-players", response_model=TeamResponse)
def set_active_players(team_id: int, request: ActivePlayersRequest, session: Session = Depends(get_session)):
    """
    Swap players in or out of the active five.

    Fewer than five is allowed here (a substitution in progress); the match
    cannot open ready-up until the team is back to five.
    """
    team = session.get(Team, team_id)
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")
    members = set(team.member_ids())
    active = request.active_player_ids
    if len(active) > ACTIVE_ROSTER_SIZE or len(set(active)) != len(active):
        raise HTTPException(status_code=422, detail=f"At most {ACTIVE_ROSTER_SIZE} distinct active players")
    if any(uid not in members for uid in active):
        raise HTTPException(status_code=422, detail="Active players must be on the roster")

    team.active_player_ids = list(active)
    session.add(team)
    session.commit()
    session.refresh(team)
    return team


@router.delete("/teams/{team_id}", status_code=204)
def delete_team(team_id: int, session: Session = Depends(get_session)):
    """Withdraw a team. Refused while any unresolved match still references it."""
    team = session.get(Team, team_id)
    if not team:
        raise HTTPException(status_code=404, detail="Team not found")

    pending = session.exec(
        select(Match).where(
            or_(Match.team1_id == team_id, Match.team2_id == team_id),
            Match.is_complete == False,  # noqa: E712
        )
    ).first()
    if pending:
        raise HTTPException(
            status_code=409,
            detail=f"Team {team.tag} still has unresolved match {pending.id}",
        )

    tournament = session.get(Tournament, team.tournament_id)
    if tournament and tournament.status not in REGISTRATION_STATUSES:
        raise HTTPException(status_code=409, detail="Teams cannot be removed once the bracket is built")

    session.delete(team)
    session.commit()
    return None
