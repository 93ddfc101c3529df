"""
Version Safety Guards

Every match mutation goes through compare_and_swap_match():

    UPDATE match SET <changes>, version = v + 1
    WHERE id = :id AND version = v

in the same transaction as any rows staged on the session (veto entries,
dispute records). Zero rows updated, or a unique-constraint violation from a
staged row, rolls the whole transaction back and raises StaleState.

ORM Match objects must never be mutated directly: autoflush would write them
without the version predicate.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from app.models.match import Match
from app.services.engine_errors import NotFound, StaleState

logger = logging.getLogger(__name__)


def require_match(session: Session, match_id: int, tournament_id: Optional[int] = None) -> Match:
    """
    Load a match or raise NotFound.

    Args:
        session: Database session
        match_id: Match ID
        tournament_id: Optional tournament ID for ownership validation
    """
    match = session.get(Match, match_id)
    if not match:
        raise NotFound(f"Match {match_id} not found", match_id=match_id)
    if tournament_id is not None and match.tournament_id != tournament_id:
        raise NotFound(f"Match {match_id} does not belong to tournament {tournament_id}", match_id=match_id)
    return match


def require_match_version(match: Match, expected_version: int) -> None:
    """Fail fast when the caller's view is already behind the stored version."""
    if match.version != expected_version:
        raise StaleState(
            f"Match {match.id} is at version {match.version}, request expected {expected_version}. Re-read and retry.",
            match_id=match.id,
        )


def compare_and_swap_match(
    session: Session,
    match_id: int,
    expected_version: int,
    changes: Dict[str, Any],
) -> int:
    """
    Apply changes to a match iff it is still at expected_version, and commit.

    Rows already added to the session are committed in the same transaction.

    Returns:
        The new version number.

    Raises:
        StaleState: another writer committed first (nothing is written).
    """
    values = dict(changes)
    values["version"] = expected_version + 1
    values.setdefault("updated_at", datetime.utcnow())

    try:
        result = session.exec(
            update(Match)
            .where(Match.id == match_id, Match.version == expected_version)
            .values(**values)
        )
        if result.rowcount != 1:
            session.rollback()
            logger.warning(f"CAS miss on match {match_id} at version {expected_version}")
            raise StaleState(
                f"Match {match_id} changed since version {expected_version}. Re-read and retry.",
                match_id=match_id,
            )
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning(f"CAS conflict on match {match_id}: {exc.orig}")
        raise StaleState(
            f"Concurrent write on match {match_id}. Re-read and retry.",
            match_id=match_id,
        ) from exc

    return expected_version + 1
