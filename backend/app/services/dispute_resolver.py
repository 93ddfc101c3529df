"""
Admin resolution of disputed matches.

    dismiss  -> match back to playing, both submissions cleared (teams resubmit)
    override -> match complete with the admin's score, then advancement

The MatchDispute row is updated in the same transaction as the match
transition and is never deleted.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlmodel import Session, select

from app.models.match import Match, MatchState
from app.models.match_dispute import DISPUTE_DISMISSED, DISPUTE_OVERRIDDEN, MatchDispute
from app.services.engine_errors import InvalidTransition, Unauthorized
from app.services.match_service import Stager, TransitionResult, open_dispute_for, perform_action
from app.services.match_state_machine import ActionRequest, MatchAction
from app.utils.actor import Actor
from app.utils.version_guards import require_match

logger = logging.getLogger(__name__)


class DisputeDecision(str, Enum):
    dismiss = "dismiss"
    override = "override"


def _record_resolution(
    admin: Actor,
    status: str,
    note: Optional[str],
    team1_score: Optional[int] = None,
    team2_score: Optional[int] = None,
) -> Stager:
    def _stage(session: Session, match: Match) -> None:
        dispute = open_dispute_for(session, match.id)
        if dispute is None:
            return
        dispute.status = status
        dispute.admin_id = admin.user_id
        dispute.resolution_note = note
        dispute.final_team1_score = team1_score
        dispute.final_team2_score = team2_score
        dispute.resolved_at = datetime.utcnow()
        session.add(dispute)
    return _stage


def resolve(
    session: Session,
    match_id: int,
    admin: Actor,
    decision: DisputeDecision,
    expected_version: int,
    team1_score: Optional[int] = None,
    team2_score: Optional[int] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Settle a disputed match.

    Raises:
        Unauthorized: caller is not an admin
        InvalidTransition: match is not disputed
        InvalidScore / TieScoreRejected: bad override score
        StaleState: match changed since expected_version
    """
    if not admin.is_admin:
        raise Unauthorized("Only admins can resolve disputes", match_id=match_id)
    match = require_match(session, match_id)
    if match.state != MatchState.disputed:
        raise InvalidTransition(f"Match {match_id} is not disputed ({match.match_state})", match_id=match_id)

    decision = DisputeDecision(decision)
    if decision == DisputeDecision.dismiss:
        request = ActionRequest(MatchAction.dismiss_dispute, note=note)
        stage = _record_resolution(admin, DISPUTE_DISMISSED, note)
    else:
        request = ActionRequest(
            MatchAction.override_score, team1_score=team1_score, team2_score=team2_score, note=note
        )
        stage = _record_resolution(admin, DISPUTE_OVERRIDDEN, note, team1_score, team2_score)

    result = perform_action(session, match_id, admin, request, expected_version, now=now, stage=stage)
    logger.info(
        f"Admin {admin.user_id} resolved dispute on match {match_id}: {decision.value}"
        + (f" {team1_score}-{team2_score}" if decision == DisputeDecision.override else "")
        + (f" ({note})" if note else "")
    )
    return result


def list_disputes(
    session: Session, status: Optional[str] = None, tournament_id: Optional[int] = None
) -> List[MatchDispute]:
    query = select(MatchDispute)
    if status:
        query = query.where(MatchDispute.status == status)
    if tournament_id is not None:
        query = query.where(MatchDispute.tournament_id == tournament_id)
    return list(session.exec(query.order_by(MatchDispute.created_at, MatchDispute.id)).all())
