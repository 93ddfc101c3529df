"""Notification log model for tracking relay calls."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON
from sqlmodel import Column, Field, SQLModel


class NotificationLog(SQLModel, table=True):
    """Log of every notification handed to the Discord relay."""

    __tablename__ = "notification_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    tournament_id: Optional[int] = Field(default=None, index=True)
    match_id: Optional[int] = Field(default=None, index=True)
    event_type: str  # match_state_changed|dispute_opened|match_completed|tournament_completed
    title: str
    message: str
    recipients: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    succeeded: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    failed: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    status: str = Field(default="sent")  # sent|partial|failed|dry_run
    error_message: Optional[str] = Field(default=None)
    sent_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
