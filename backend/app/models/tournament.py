from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.match import Match
    from app.models.team import Team


class TournamentFormat(str, Enum):
    single_elimination = "single-elimination"
    double_elimination = "double-elimination"
    swiss = "swiss"


class TournamentStatus(str, Enum):
    draft = "draft"
    registration_open = "registration-open"
    in_progress = "in-progress"
    completed = "completed"


class SideSelectionMethod(str, Enum):
    veto_loser = "veto-loser"
    coin_flip = "coin-flip"


class Tournament(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    format: str = Field(default=TournamentFormat.single_elimination.value)
    target_team_count: int = Field(default=8)
    status: str = Field(default=TournamentStatus.draft.value)

    best_of: str = Field(default="BO1")
    finals_best_of: str = Field(default="BO3")  # final / grand final / bracket reset
    swiss_rounds: Optional[int] = Field(default=None)  # None -> ceil(log2(N)) at build time
    random_seed: int = Field(default=0)  # fixed at creation; shuffles, coin flips, last tie-break
    side_selection: str = Field(default=SideSelectionMethod.veto_loser.value)
    ready_timeout_seconds: Optional[int] = Field(default=None)  # None -> READY_UP_TIMEOUT_SECONDS
    map_pool: Optional[List[str]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    source_tournament_id: Optional[int] = Field(default=None, index=True)  # playoff seeded from this stage

    # Frozen when the bracket is built
    team_count: Optional[int] = Field(default=None)
    bracket_size: Optional[int] = Field(default=None)

    champion_team_id: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow, sa_column_kwargs={"onupdate": datetime.utcnow})
    completed_at: Optional[datetime] = Field(default=None)

    # Relationships
    teams: List["Team"] = Relationship(back_populates="tournament")
    matches: List["Match"] = Relationship(back_populates="tournament")
