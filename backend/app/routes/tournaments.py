import random
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from sqlmodel import Session, select

from app.database import get_session
from app.models.match import BracketSide, Match
from app.models.team import Team
from app.models.tournament import SideSelectionMethod, Tournament, TournamentFormat, TournamentStatus
from app.routes.matches import MatchResponse
from app.services.bracket_builder import create_bracket
from app.services.engine_errors import EngineError, Unauthorized
from app.services.swiss import swiss_standings
from app.services.veto_engine import TERMINAL_MAP_COUNT, validate_map_pool
from app.utils.actor import Actor, get_actor

router = APIRouter()

EDITABLE_STATUSES = (TournamentStatus.draft.value, TournamentStatus.registration_open.value)
BRACKET_ORDER = {
    BracketSide.winners.value: 0,
    BracketSide.losers.value: 1,
    BracketSide.grand_final.value: 2,
    BracketSide.swiss.value: 3,
}


class TournamentSettings(BaseModel):
    best_of: Optional[str] = None
    finals_best_of: Optional[str] = None
    swiss_rounds: Optional[int] = None
    side_selection: Optional[str] = None
    ready_timeout_seconds: Optional[int] = None
    map_pool: Optional[List[str]] = None

    @field_validator("best_of", "finals_best_of")
    @classmethod
    def validate_best_of(cls, v):
        if v is not None and v not in TERMINAL_MAP_COUNT:
            raise ValueError(f"must be one of {', '.join(TERMINAL_MAP_COUNT)}")
        return v

    @field_validator("side_selection")
    @classmethod
    def validate_side_selection(cls, v):
        if v is not None and v not in [m.value for m in SideSelectionMethod]:
            raise ValueError(f"must be one of {', '.join(m.value for m in SideSelectionMethod)}")
        return v

    @field_validator("swiss_rounds", "ready_timeout_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v is not None and v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_pool(self):
        if self.map_pool is not None:
            for best_of in {self.best_of or "BO1", self.finals_best_of or "BO3"}:
                try:
                    validate_map_pool(self.map_pool, best_of)
                except EngineError as e:
                    raise ValueError(e.message)
        return self


class TournamentCreate(TournamentSettings):
    name: str
    format: str = TournamentFormat.single_elimination.value
    target_team_count: int = 8
    random_seed: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("name is required")
        return v.strip()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v):
        if v not in [f.value for f in TournamentFormat]:
            raise ValueError(f"must be one of {', '.join(f.value for f in TournamentFormat)}")
        return v

    @field_validator("target_team_count")
    @classmethod
    def validate_target(cls, v):
        if v < 2:
            raise ValueError("target_team_count must be >= 2")
        return v


class TournamentUpdate(TournamentSettings):
    name: Optional[str] = None
    target_team_count: Optional[int] = None


class TournamentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    format: str
    target_team_count: int
    status: str
    best_of: str
    finals_best_of: str
    swiss_rounds: Optional[int] = None
    random_seed: int
    side_selection: str
    ready_timeout_seconds: Optional[int] = None
    map_pool: Optional[List[str]] = None
    source_tournament_id: Optional[int] = None
    team_count: Optional[int] = None
    bracket_size: Optional[int] = None
    champion_team_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class BracketBuildResponse(BaseModel):
    tournament_id: int
    format: str
    seeds: Dict[int, int]
    match_ids: List[int]
    bye_match_ids: List[int]


class BracketRound(BaseModel):
    bracket: str
    round_number: int
    matches: List[MatchResponse]


class BracketViewResponse(BaseModel):
    tournament: TournamentResponse
    rounds: List[BracketRound]


class StandingResponse(BaseModel):
    rank: int
    team_id: int
    team_name: str
    seed: int
    wins: int
    losses: int
    byes: int
    head_to_head: int
    opponent_win_pct: float


def _get_tournament_or_404(session: Session, tournament_id: int) -> Tournament:
    tournament = session.get(Tournament, tournament_id)
    if not tournament:
        raise HTTPException(status_code=404, detail="Tournament not found")
    return tournament


@router.get("/tournaments", response_model=List[TournamentResponse])
def list_tournaments(session: Session = Depends(get_session)):
    """List all tournaments"""
    return session.exec(select(Tournament).order_by(Tournament.id)).all()


@router.post("/tournaments", response_model=TournamentResponse, status_code=201)
def create_tournament(tournament_data: TournamentCreate, session: Session = Depends(get_session)):
    """Create a tournament in draft. The random seed is fixed here for reproducible shuffles."""
    data = tournament_data.model_dump(exclude_none=True)
    if "random_seed" not in data:
        data["random_seed"] = random.randrange(1, 2**31)
    tournament = Tournament(**data)
    session.add(tournament)
    session.commit()
    session.refresh(tournament)
    return tournament


@router.get("/tournaments/{tournament_id}", response_model=TournamentResponse)
def get_tournament(tournament_id: int, session: Session = Depends(get_session)):
    """Get a tournament by ID"""
    return _get_tournament_or_404(session, tournament_id)


@router.put("/tournaments/{tournament_id}", response_model=TournamentResponse)
def update_tournament(tournament_id: int, tournament_data: TournamentUpdate, session: Session = Depends(get_session)):
    """Update settings; only before the bracket is built."""
    tournament = _get_tournament_or_404(session, tournament_id)
    if tournament.status not in EDITABLE_STATUSES:
        raise HTTPException(status_code=409, detail="Tournament settings are frozen once the bracket is built")

    for field, value in tournament_data.model_dump(exclude_unset=True).items():
        setattr(tournament, field, value)
    tournament.updated_at = datetime.utcnow()
    session.add(tournament)
    session.commit()
    session.refresh(tournament)
    return tournament


@router.post("/tournaments/{tournament_id}/open-registration", response_model=TournamentResponse)
def open_registration(tournament_id: int, session: Session = Depends(get_session)):
    tournament = _get_tournament_or_404(session, tournament_id)
    if tournament.status != TournamentStatus.draft.value:
        raise HTTPException(status_code=409, detail=f"Tournament is {tournament.status}, not draft")
    tournament.status = TournamentStatus.registration_open.value
    session.add(tournament)
    session.commit()
    session.refresh(tournament)
    return tournament


@router.post("/tournaments/{tournament_id}/bracket", response_model=BracketBuildResponse, status_code=201)
def build_bracket(
    tournament_id: int,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    """Seed registered teams, persist round 1 and start the tournament (admin)."""
    if not actor.is_admin:
        raise Unauthorized("Only admins can build brackets")
    _get_tournament_or_404(session, tournament_id)
    return create_bracket(session, tournament_id)


@router.get("/tournaments/{tournament_id}/bracket", response_model=BracketViewResponse)
def get_bracket(tournament_id: int, session: Session = Depends(get_session)):
    """All matches grouped by bracket side and round."""
    tournament = _get_tournament_or_404(session, tournament_id)
    matches = session.exec(select(Match).where(Match.tournament_id == tournament_id)).all()

    grouped: Dict[tuple, List[Match]] = {}
    for m in matches:
        grouped.setdefault((m.bracket, m.round_number), []).append(m)

    rounds = [
        BracketRound(
            bracket=bracket,
            round_number=round_number,
            matches=[MatchResponse.model_validate(m) for m in sorted(ms, key=lambda m: m.match_number)],
        )
        for (bracket, round_number), ms in sorted(
            grouped.items(), key=lambda item: (BRACKET_ORDER.get(item[0][0], 9), item[0][1])
        )
    ]
    return BracketViewResponse(tournament=TournamentResponse.model_validate(tournament), rounds=rounds)


@router.get("/tournaments/{tournament_id}/standings", response_model=List[StandingResponse])
def get_standings(tournament_id: int, session: Session = Depends(get_session)):
    """Swiss standings with tie-break columns."""
    tournament = _get_tournament_or_404(session, tournament_id)
    if tournament.format != TournamentFormat.swiss.value:
        raise HTTPException(status_code=422, detail="Standings are only available for Swiss tournaments")

    teams = session.exec(select(Team).where(Team.tournament_id == tournament_id)).all()
    names = {t.id: t.name for t in teams}
    matches = session.exec(
        select(Match).where(Match.tournament_id == tournament_id, Match.bracket == BracketSide.swiss.value)
    ).all()
    return [
        StandingResponse(
            rank=s.rank,
            team_id=s.team_id,
            team_name=names.get(s.team_id, ""),
            seed=s.seed,
            wins=s.wins,
            losses=s.losses,
            byes=s.byes,
            head_to_head=s.head_to_head,
            opponent_win_pct=float(s.opponent_win_pct),
        )
        for s in swiss_standings(teams, matches)
    ]


@router.get("/tournaments/{tournament_id}/matches", response_model=List[MatchResponse])
def list_matches(
    tournament_id: int,
    bracket: Optional[str] = Query(default=None),
    round_number: Optional[int] = Query(default=None),
    session: Session = Depends(get_session),
):
    """Matches of a tournament, optionally filtered by bracket side and round."""
    _get_tournament_or_404(session, tournament_id)
    query = select(Match).where(Match.tournament_id == tournament_id)
    if bracket:
        query = query.where(Match.bracket == bracket)
    if round_number is not None:
        query = query.where(Match.round_number == round_number)
    return session.exec(query.order_by(Match.bracket, Match.round_number, Match.match_number)).all()
