from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import JSON, UniqueConstraint as SAUniqueConstraint
from sqlmodel import Column, Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.tournament import Tournament


class MatchState(str, Enum):
    scheduled = "scheduled"
    ready_up = "ready_up"
    map_banning = "map_banning"
    side_selection = "side_selection"
    playing = "playing"
    waiting_results = "waiting_results"
    disputed = "disputed"
    complete = "complete"


class BracketSide(str, Enum):
    winners = "winners"
    losers = "losers"
    grand_final = "grand_final"
    swiss = "swiss"


class Match(SQLModel, table=True):
    __table_args__ = (
        SAUniqueConstraint(
            "tournament_id", "bracket", "round_number", "match_number", name="uq_match_bracket_position"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    bracket: str = Field(default=BracketSide.winners.value)
    round_number: int
    match_number: int
    best_of: str = Field(default="BO1")

    # Team slots (nullable = TBD until the upstream result lands)
    team1_id: Optional[int] = Field(default=None, foreign_key="team.id")
    team2_id: Optional[int] = Field(default=None, foreign_key="team.id")

    match_state: str = Field(default=MatchState.scheduled.value, index=True)
    version: int = Field(default=1)  # bumped by every committed transition

    # Ready-up
    team1_ready: bool = Field(default=False)
    team2_ready: bool = Field(default=False)
    ready_deadline: Optional[datetime] = Field(default=None)

    # Veto
    map_pool: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    veto_first_slot: int = Field(default=1)
    veto_attempt: int = Field(default=1)  # cancel starts a new attempt; old entries stay
    selected_maps: Optional[List[str]] = Field(default=None, sa_column=Column(JSON, nullable=True))

    # Side selection
    side_chooser_team_id: Optional[int] = Field(default=None)
    team1_side: Optional[str] = Field(default=None)  # attack | defense
    team2_side: Optional[str] = Field(default=None)

    # Result submission: {"team1_score", "team2_score", "submitted_by", "submitted_at"}
    team1_submission: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    team2_submission: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))

    team1_score: Optional[int] = Field(default=None)
    team2_score: Optional[int] = Field(default=None)
    winner_team_id: Optional[int] = Field(default=None)
    is_complete: bool = Field(default=False)
    is_bye: bool = Field(default=False)
    forfeit: bool = Field(default=False)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default=None)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)

    tournament: "Tournament" = Relationship(back_populates="matches")

    @property
    def state(self) -> MatchState:
        return MatchState(self.match_state)

    def slot_of(self, team_id: Optional[int]) -> Optional[int]:
        """1 or 2 for a participant, None otherwise."""
        if team_id is None:
            return None
        if team_id == self.team1_id:
            return 1
        if team_id == self.team2_id:
            return 2
        return None

    def team_in_slot(self, slot: int) -> Optional[int]:
        return self.team1_id if slot == 1 else self.team2_id

    def loser_team_id(self) -> Optional[int]:
        if self.winner_team_id is None or self.is_bye:
            return None
        return self.team2_id if self.winner_team_id == self.team1_id else self.team1_id
