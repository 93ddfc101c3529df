"""Discord notification relay client.

Thin wrapper around the Discord bot's HTTP endpoint:

    POST {DISCORD_RELAY_URL}/api/send-discord-notification
    {"userIds": [...], "title": "...", "message": "..."}
    -> {"success": bool, "results": {"success": [...], "failed": [...]}}

Delivery is best-effort and per recipient; the relay owns retries and
formatting. Every call is recorded in NotificationLog.
"""

import logging
from typing import Callable, List, Optional

import requests
from sqlmodel import Session

from app.config import DISCORD_RELAY_TIMEOUT_SECONDS, DISCORD_RELAY_URL
from app.models.match import Match
from app.models.notification_log import NotificationLog
from app.models.team import Team
from app.services.match_events import EVENT_TOURNAMENT_COMPLETED, MatchEvent

logger = logging.getLogger(__name__)

SEND_PATH = "/api/send-discord-notification"


def recipients_for_teams(teams: List[Team]) -> List[str]:
    """All roster user ids across the given teams, captain first, deduped."""
    user_ids: List[str] = []
    for team in teams:
        for uid in [team.captain_user_id] + team.member_ids():
            if uid and uid not in user_ids:
                user_ids.append(uid)
    return user_ids


def _load_teams(session: Session, team_ids: List[Optional[int]]) -> List[Team]:
    teams = []
    for tid in team_ids:
        team = session.get(Team, tid) if tid is not None else None
        if team is not None:
            teams.append(team)
    return teams


def format_event(event: MatchEvent) -> tuple:
    """Return (title, message) for an engine event."""
    if event.event_type == "dispute_opened":
        reason = event.payload.get("reason", "dispute")
        return (
            "Match disputed",
            f"Match #{event.match_id} is under review ({reason}). An admin will resolve it.",
        )
    if event.event_type == "match_completed":
        return (
            "Match complete",
            f"Match #{event.match_id} finished "
            f"{event.payload.get('team1_score')}-{event.payload.get('team2_score')}.",
        )
    if event.event_type == EVENT_TOURNAMENT_COMPLETED:
        return ("Tournament complete", f"Tournament #{event.tournament_id} has a champion.")
    return (
        "Match update",
        f"Match #{event.match_id} is now {(event.match_state or '').replace('_', ' ')}.",
    )


class NotificationRelay:
    """
    Client for the Discord bot relay.

    Reads the relay base URL from DISCORD_RELAY_URL. If it is not set,
    operates in dry-run mode (logs messages but doesn't send).
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url if base_url is not None else DISCORD_RELAY_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else DISCORD_RELAY_TIMEOUT_SECONDS
        self.dry_run = not self.base_url
        if self.dry_run:
            logger.warning("Discord relay URL not configured. Running in dry-run mode. Set DISCORD_RELAY_URL.")

    def send(self, user_ids: List[str], title: str, message: str) -> dict:
        """
        Send one notification to a list of Discord users.

        Returns:
            dict with keys: status, succeeded, failed, error
        """
        if not user_ids:
            return {"status": "sent", "succeeded": [], "failed": [], "error": None}

        if self.dry_run:
            logger.info(f"[DRY RUN] Discord to {len(user_ids)} users: {title}: {message[:80]}")
            return {"status": "dry_run", "succeeded": [], "failed": [], "error": None}

        try:
            resp = requests.post(
                f"{self.base_url}{SEND_PATH}",
                json={"userIds": user_ids, "title": title, "message": message},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to reach Discord relay: {e}")
            return {"status": "failed", "succeeded": [], "failed": list(user_ids), "error": str(e)}

        results = body.get("results") or {}
        succeeded = [str(u) for u in results.get("success", [])]
        failed = [str(u) for u in results.get("failed", [])]
        if failed and succeeded:
            status = "partial"
        elif failed or not body.get("success", False):
            status = "failed"
        else:
            status = "sent"
        logger.info(f"Discord relay: {len(succeeded)} delivered, {len(failed)} failed ({title})")
        return {"status": status, "succeeded": succeeded, "failed": failed, "error": None}


def make_relay_subscriber(
    session_factory: Callable[[], Session], relay: Optional[NotificationRelay] = None
) -> Callable[[MatchEvent], None]:
    """Build an event-bus subscriber that forwards events to the relay and logs each call."""
    relay = relay or NotificationRelay()

    def _on_event(event: MatchEvent) -> None:
        with session_factory() as session:
            teams = _load_teams(session, event.team_ids)
            if not teams and event.match_id is not None:
                match = session.get(Match, event.match_id)
                if match:
                    teams = _load_teams(session, [match.team1_id, match.team2_id])
            user_ids = recipients_for_teams(teams)
            title, message = format_event(event)
            result = relay.send(user_ids, title, message)
            session.add(NotificationLog(
                tournament_id=event.tournament_id,
                match_id=event.match_id,
                event_type=event.event_type,
                title=title,
                message=message,
                recipients=user_ids,
                succeeded=result["succeeded"],
                failed=result["failed"],
                status=result["status"],
                error_message=result["error"],
            ))
            session.commit()

    return _on_event
