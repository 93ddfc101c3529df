from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, SQLModel


class MapVetoEntry(SQLModel, table=True):
    """Append-only veto transcript line. Unique constraints keep a map from being acted on twice."""

    __tablename__ = "map_veto_entry"
    __table_args__ = (
        SAUniqueConstraint("match_id", "attempt", "sequence", name="uq_veto_sequence"),
        SAUniqueConstraint("match_id", "attempt", "map_name", name="uq_veto_map"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(foreign_key="match.id", index=True)
    attempt: int = Field(default=1)
    sequence: int  # 1-based
    team_id: int = Field(foreign_key="team.id")
    action: str = Field(default="ban")
    map_name: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
