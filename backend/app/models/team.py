from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import JSON, UniqueConstraint as SAUniqueConstraint
from sqlmodel import Column, Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.tournament import Tournament

ACTIVE_ROSTER_SIZE = 5
MAX_TAG_LENGTH = 5

ROSTER_ROLES = ("owner", "captain", "member")
CAPTAIN_ROLES = ("owner", "captain")


class Team(SQLModel, table=True):
    """Reference copy of a registered team; identity and roster are owned by registration."""

    __table_args__ = (
        SAUniqueConstraint("tournament_id", "tag", name="uq_tournament_team_tag"),
        SAUniqueConstraint("tournament_id", "seed", name="uq_tournament_seed"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    name: str
    tag: str  # <= 5 chars
    captain_user_id: str
    # Ordered [{"user_id": "...", "role": "owner|captain|member"}]
    roster: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    active_player_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    registered: bool = Field(default=True)
    seed: Optional[int] = Field(default=None)  # 1-based; assigned at bracket build when missing
    created_at: datetime = Field(default_factory=datetime.utcnow)

    tournament: "Tournament" = Relationship(back_populates="teams")

    def member_ids(self) -> List[str]:
        return [m.get("user_id") for m in self.roster or []]

    def can_act_for_team(self, user_id: str) -> bool:
        """Captain, owner, or a roster entry with a captain role."""
        if user_id == self.captain_user_id:
            return True
        for m in self.roster or []:
            if m.get("user_id") == user_id and m.get("role") in CAPTAIN_ROLES:
                return True
        return False
