from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel

DISPUTE_SCORE_MISMATCH = "score_mismatch"
DISPUTE_MANUAL = "manual_dispute"

DISPUTE_OPEN = "open"
DISPUTE_DISMISSED = "dismissed"
DISPUTE_OVERRIDDEN = "overridden"
DISPUTE_CANCELLED = "cancelled"


class MatchDispute(SQLModel, table=True):
    """Dispute record. Kept after resolution for audit."""

    __tablename__ = "match_dispute"

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(foreign_key="match.id", index=True)
    tournament_id: int = Field(foreign_key="tournament.id", index=True)
    reason: str  # score_mismatch | manual_dispute
    raised_by: str  # user id, or "system" for score mismatches
    note: Optional[str] = Field(default=None)
    team1_submission: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    team2_submission: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))

    status: str = Field(default=DISPUTE_OPEN, index=True)  # open | dismissed | overridden | cancelled
    admin_id: Optional[str] = Field(default=None)
    resolution_note: Optional[str] = Field(default=None)
    final_team1_score: Optional[int] = Field(default=None)
    final_team2_score: Optional[int] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = Field(default=None)
