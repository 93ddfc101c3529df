"""
Match operations.

Each public function is one protocol step for one match:

    load -> check expected version -> authorize actor -> plan (pure)
         -> stage rows + compare-and-swap commit -> publish events
         -> advancement (when the match completed)

Any failure before the commit leaves the stored match untouched. Callers
must pass the version they last read; a moved-on match raises StaleState
and the caller re-reads. The engine never retries on the caller's behalf.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlmodel import Session, select

from app.config import READY_UP_TIMEOUT_SECONDS
from app.models.map_veto import MapVetoEntry
from app.models.match import Match, MatchState
from app.models.match_dispute import DISPUTE_CANCELLED, DISPUTE_OPEN, MatchDispute
from app.models.team import ACTIVE_ROSTER_SIZE, Team
from app.models.tournament import Tournament
from app.services.advancement_service import AdvancementResult, on_match_complete
from app.services.engine_errors import EngineError, InsufficientRoster, NotFound, StaleState, Unauthorized
from app.services.match_events import MatchEvent, publish
from app.services.match_state_machine import (
    ADMIN_ACTIONS,
    TEAM_ACTIONS,
    ActionRequest,
    MatchAction,
    MatchRules,
    Transition,
    plan_transition,
)
from app.services.veto_engine import DEFAULT_MAP_POOL, VetoTurn, next_veto_action
from app.utils.actor import Actor
from app.utils.version_guards import compare_and_swap_match, require_match, require_match_version

logger = logging.getLogger(__name__)

# Staging hook: runs inside the transition's transaction, before the CAS.
Stager = Callable[[Session, Match], None]


@dataclass
class TransitionResult:
    match: Match
    transition: Transition
    advancement: Optional[AdvancementResult] = None


@dataclass
class SweepResult:
    expired: List[int] = field(default_factory=list)
    needs_admin: List[int] = field(default_factory=list)
    skipped_stale: List[int] = field(default_factory=list)


def rules_for(tournament: Optional[Tournament]) -> MatchRules:
    if tournament is None:
        return MatchRules(ready_timeout=timedelta(seconds=READY_UP_TIMEOUT_SECONDS))
    timeout = tournament.ready_timeout_seconds or READY_UP_TIMEOUT_SECONDS
    return MatchRules(
        ready_timeout=timedelta(seconds=timeout),
        side_selection=tournament.side_selection,
        random_seed=tournament.random_seed,
        map_pool=list(tournament.map_pool) if tournament.map_pool else list(DEFAULT_MAP_POOL),
    )


def current_veto_entries(session: Session, match: Match) -> List[MapVetoEntry]:
    return list(session.exec(
        select(MapVetoEntry)
        .where(MapVetoEntry.match_id == match.id, MapVetoEntry.attempt == match.veto_attempt)
        .order_by(MapVetoEntry.sequence)
    ).all())


def open_dispute_for(session: Session, match_id: int) -> Optional[MatchDispute]:
    return session.exec(
        select(MatchDispute)
        .where(MatchDispute.match_id == match_id, MatchDispute.status == DISPUTE_OPEN)
        .order_by(MatchDispute.id.desc())
    ).first()


def _authorize(session: Session, match: Match, actor: Actor, request: ActionRequest, team_id: Optional[int]) -> None:
    action = request.action
    if action in ADMIN_ACTIONS:
        if not actor.is_admin:
            raise Unauthorized(f"{action.value} requires admin privileges", match_id=match.id)
        return
    if action == MatchAction.ready_timeout:
        return
    if action == MatchAction.open_ready_up and actor.is_admin and team_id is None:
        return
    if action in TEAM_ACTIONS or action == MatchAction.open_ready_up:
        slot = match.slot_of(team_id)
        if slot is None:
            raise Unauthorized(f"Team {team_id} is not a participant in match {match.id}", match_id=match.id)
        team = session.get(Team, team_id)
        if team is None or not team.can_act_for_team(actor.user_id):
            raise Unauthorized(f"User {actor.user_id} cannot act for team {team_id}", match_id=match.id)
        request.slot = slot
        return
    raise Unauthorized(f"No authorization rule for {action.value}", match_id=match.id)


def _require_rosters(session: Session, match: Match) -> None:
    for team_id in (match.team1_id, match.team2_id):
        team = session.get(Team, team_id) if team_id is not None else None
        if team is None:
            continue  # unresolved slot; the state machine rejects it
        active = team.active_player_ids or []
        if len(active) != ACTIVE_ROSTER_SIZE:
            raise InsufficientRoster(
                f"Team {team.tag} has {len(active)} active players, {ACTIVE_ROSTER_SIZE} required",
                match_id=match.id,
            )


def _stage_rows(session: Session, match: Match, transition: Transition) -> None:
    if transition.veto is not None:
        session.add(MapVetoEntry(
            match_id=match.id,
            attempt=match.veto_attempt,
            sequence=transition.veto.sequence,
            team_id=transition.veto.team_id,
            action="ban",
            map_name=transition.veto.map_name,
        ))
    if transition.dispute is not None:
        session.add(MatchDispute(match_id=match.id, tournament_id=match.tournament_id, **transition.dispute))


def _publish(match: Match, transition: Transition) -> None:
    payload: Dict = {"action": transition.action.value, "from_state": transition.from_state.value}
    if transition.completed:
        payload.update({
            "team1_score": match.team1_score,
            "team2_score": match.team2_score,
            "winner_team_id": match.winner_team_id,
            "forfeit": match.forfeit,
        })
    if transition.dispute is not None:
        payload["reason"] = transition.dispute["reason"]
    for event_type in transition.events:
        publish(MatchEvent(
            event_type=event_type,
            tournament_id=match.tournament_id,
            match_id=match.id,
            match_state=match.match_state,
            version=match.version,
            team_ids=[t for t in (match.team1_id, match.team2_id) if t is not None],
            payload=payload,
        ))


def perform_action(
    session: Session,
    match_id: int,
    actor: Optional[Actor],
    request: ActionRequest,
    expected_version: int,
    team_id: Optional[int] = None,
    now: Optional[datetime] = None,
    stage: Optional[Stager] = None,
) -> TransitionResult:
    """Run one protocol step. Raises an EngineError and writes nothing on failure."""
    now = now or datetime.utcnow()
    actor = actor or Actor(user_id="system")
    match = require_match(session, match_id)
    require_match_version(match, expected_version)

    request.actor_id = actor.user_id
    _authorize(session, match, actor, request, team_id)
    if request.action == MatchAction.open_ready_up:
        _require_rosters(session, match)

    tournament = session.get(Tournament, match.tournament_id)
    rules = rules_for(tournament)
    transition = plan_transition(match, request, rules, now, current_veto_entries(session, match))

    try:
        _stage_rows(session, match, transition)
        if stage is not None:
            stage(session, match)
    except Exception:
        session.rollback()
        raise
    new_version = compare_and_swap_match(session, match_id, expected_version, transition.changes)

    logger.info(
        f"Match {match_id}: {transition.action.value} by {actor.user_id} "
        f"{transition.from_state.value} -> {transition.to_state.value} (v{new_version})"
    )

    match = session.get(Match, match_id)
    _publish(match, transition)

    advancement = None
    if transition.completed:
        # The result is already committed; a failed propagation is left for replay-advancement.
        try:
            advancement = on_match_complete(session, match_id)
        except EngineError as exc:
            session.rollback()
            logger.exception(f"Advancement after match {match_id} failed ({exc.code}); replay pending")
            match = session.get(Match, match_id)
    return TransitionResult(match=match, transition=transition, advancement=advancement)


# -----------------------------------------------------------------------------
# Team operations
# -----------------------------------------------------------------------------

def open_ready_up(session: Session, match_id: int, actor: Actor, expected_version: int,
                  team_id: Optional[int] = None, now: Optional[datetime] = None) -> TransitionResult:
    return perform_action(session, match_id, actor, ActionRequest(MatchAction.open_ready_up),
                          expected_version, team_id=team_id, now=now)


def set_ready(session: Session, match_id: int, actor: Actor, team_id: int, expected_version: int,
              now: Optional[datetime] = None) -> TransitionResult:
    return perform_action(session, match_id, actor, ActionRequest(MatchAction.ready),
                          expected_version, team_id=team_id, now=now)


def set_unready(session: Session, match_id: int, actor: Actor, team_id: int, expected_version: int,
                now: Optional[datetime] = None) -> TransitionResult:
    return perform_action(session, match_id, actor, ActionRequest(MatchAction.unready),
                          expected_version, team_id=team_id, now=now)


def ban_map(session: Session, match_id: int, actor: Actor, team_id: int, map_name: str,
            expected_version: int, now: Optional[datetime] = None) -> TransitionResult:
    return perform_action(session, match_id, actor, ActionRequest(MatchAction.ban_map, map_name=map_name),
                          expected_version, team_id=team_id, now=now)


def choose_side(session: Session, match_id: int, actor: Actor, team_id: int, side: str,
                expected_version: int, now: Optional[datetime] = None) -> TransitionResult:
    return perform_action(session, match_id, actor, ActionRequest(MatchAction.choose_side, side=side),
                          expected_version, team_id=team_id, now=now)


def submit_score(session: Session, match_id: int, actor: Actor, team_id: int, team1_score: int,
                 team2_score: int, expected_version: int, now: Optional[datetime] = None) -> TransitionResult:
    request = ActionRequest(MatchAction.submit_score, team1_score=team1_score, team2_score=team2_score)
    return perform_action(session, match_id, actor, request, expected_version, team_id=team_id, now=now)


def flag_dispute(session: Session, match_id: int, actor: Actor, team_id: int, team1_score: int,
                 team2_score: int, note: Optional[str], expected_version: int,
                 now: Optional[datetime] = None) -> TransitionResult:
    request = ActionRequest(MatchAction.flag_dispute, team1_score=team1_score, team2_score=team2_score, note=note)
    return perform_action(session, match_id, actor, request, expected_version, team_id=team_id, now=now)


# -----------------------------------------------------------------------------
# Admin operations
# -----------------------------------------------------------------------------

def set_veto_order(session: Session, match_id: int, actor: Actor, first_team_id: int,
                   expected_version: int, now: Optional[datetime] = None) -> TransitionResult:
    match = require_match(session, match_id)
    first_slot = match.slot_of(first_team_id)
    if first_slot is None:
        raise NotFound(f"Team {first_team_id} is not in match {match_id}", match_id=match_id)
    return perform_action(session, match_id, actor, ActionRequest(MatchAction.set_veto_order, first_slot=first_slot),
                          expected_version, now=now)


def force_forfeit(session: Session, match_id: int, actor: Actor, winner_team_id: int,
                  expected_version: int, note: Optional[str] = None,
                  now: Optional[datetime] = None) -> TransitionResult:
    match = require_match(session, match_id)
    winner_slot = match.slot_of(winner_team_id)
    if winner_slot is None:
        raise NotFound(f"Team {winner_team_id} is not in match {match_id}", match_id=match_id)
    logger.info(f"Admin {actor.user_id} forcing forfeit on match {match_id}, winner {winner_team_id}: {note or ''}")
    request = ActionRequest(MatchAction.force_forfeit, winner_slot=winner_slot, note=note)
    return perform_action(session, match_id, actor, request, expected_version, now=now,
                          stage=_close_open_dispute(actor, note))


def cancel_match(session: Session, match_id: int, actor: Actor, expected_version: int,
                 note: Optional[str] = None, now: Optional[datetime] = None) -> TransitionResult:
    """Abort the in-flight protocol and return the match to scheduled."""
    logger.info(f"Admin {actor.user_id} cancelling match {match_id}: {note or ''}")
    return perform_action(session, match_id, actor, ActionRequest(MatchAction.cancel, note=note),
                          expected_version, now=now, stage=_close_open_dispute(actor, note))


def _close_open_dispute(actor: Actor, note: Optional[str]) -> Stager:
    def _stage(session: Session, match: Match) -> None:
        dispute = open_dispute_for(session, match.id)
        if dispute is None:
            return
        dispute.status = DISPUTE_CANCELLED
        dispute.admin_id = actor.user_id
        dispute.resolution_note = note or "Match cancelled or forfeited by admin"
        dispute.resolved_at = datetime.utcnow()
        session.add(dispute)
    return _stage


# -----------------------------------------------------------------------------
# Ready-up timeouts
# -----------------------------------------------------------------------------

def expire_ready_timeout(session: Session, match_id: int, expected_version: int,
                         now: Optional[datetime] = None) -> TransitionResult:
    return perform_action(session, match_id, None, ActionRequest(MatchAction.ready_timeout),
                          expected_version, now=now)


def expire_ready_timeouts(session: Session, now: Optional[datetime] = None,
                          tournament_id: Optional[int] = None) -> SweepResult:
    """Forfeit every ready-up whose window has passed. Matches that moved on meanwhile are skipped."""
    now = now or datetime.utcnow()
    query = select(Match).where(
        Match.match_state == MatchState.ready_up.value,
        Match.ready_deadline.is_not(None),
        Match.ready_deadline <= now,
    )
    if tournament_id is not None:
        query = query.where(Match.tournament_id == tournament_id)
    due = [(m.id, m.version) for m in session.exec(query.order_by(Match.id)).all()]

    result = SweepResult()
    for match_id, version in due:
        try:
            expire_ready_timeout(session, match_id, version, now=now)
            result.expired.append(match_id)
        except StaleState:
            result.skipped_stale.append(match_id)
        except EngineError as e:
            logger.warning(f"Ready-up expired on match {match_id} without a winner: {e}")
            result.needs_admin.append(match_id)
    return result


def veto_status(session: Session, match_id: int) -> tuple:
    """(VetoTurn, entries of the current attempt)."""
    match = require_match(session, match_id)
    entries = current_veto_entries(session, match)
    turn: VetoTurn = next_veto_action(match, entries)
    return turn, entries
