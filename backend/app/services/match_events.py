"""
In-process publish/subscribe for engine events.

Events are published only after a transition has committed, so subscribers
never observe a state that was rolled back. Subscriber failures are logged
and never reach the caller of the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_TOURNAMENT_COMPLETED = "tournament_completed"


@dataclass(frozen=True)
class MatchEvent:
    event_type: str
    tournament_id: int
    match_id: Optional[int] = None
    match_state: Optional[str] = None
    version: Optional[int] = None
    team_ids: List[int] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=datetime.utcnow)


Subscriber = Callable[[MatchEvent], None]

_subscribers: List[Subscriber] = []


def subscribe(callback: Subscriber) -> None:
    if callback not in _subscribers:
        _subscribers.append(callback)


def unsubscribe(callback: Subscriber) -> None:
    if callback in _subscribers:
        _subscribers.remove(callback)


def clear_subscribers() -> None:
    _subscribers.clear()


def publish(event: MatchEvent) -> None:
    for callback in list(_subscribers):
        try:
            callback(event)
        except Exception as e:
            logger.error(f"Event subscriber failed for {event.event_type} on match {event.match_id}: {e}")
