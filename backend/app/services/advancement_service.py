"""
Advancement: when a match completes, move its teams to the next matches.

Elimination brackets fill the downstream slot named by BracketTopology,
creating the downstream match on first touch. Swiss generates the next
round once every match of the current round is complete. Both paths end in
tournament completion when a champion is decided.

Guarantees:
    - Idempotent: re-delivering a completion writes nothing new. A slot that
      already holds the team is a no-op and downstream matches are keyed by
      (tournament, bracket, round, match_number) under a unique constraint.
    - Slot fills use the same version CAS as match transitions. A CAS miss
      re-reads the target and re-applies the fill (fills of different slots
      commute).
    - A slot holding a different team is a bracket bug: SlotOccupied.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.models.match import BracketSide, Match, MatchState
from app.models.team import Team
from app.models.tournament import Tournament, TournamentFormat, TournamentStatus
from app.services.bracket_topology import GF, BracketTopology, MatchKey, SlotRef
from app.services.engine_errors import InvalidTransition, SlotOccupied, StaleState
from app.services.match_events import EVENT_TOURNAMENT_COMPLETED, MatchEvent, publish
from app.services.swiss import (
    bye_history,
    default_swiss_rounds,
    pair_swiss_round,
    pairing_history,
    swiss_standings,
)
from app.services.veto_engine import DEFAULT_MAP_POOL
from app.utils.version_guards import compare_and_swap_match, require_match

logger = logging.getLogger(__name__)

SWISS = BracketSide.swiss.value
MAX_FILL_ATTEMPTS = 3
BYE_SCORE = (1, 0)


@dataclass
class AdvancementResult:
    match_id: int
    filled_slots: List[Dict[str, Any]] = field(default_factory=list)
    created_match_ids: List[int] = field(default_factory=list)
    bye_match_ids: List[int] = field(default_factory=list)
    swiss_round_generated: Optional[int] = None
    tournament_completed: bool = False
    champion_team_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_id": self.match_id,
            "filled_slots": self.filled_slots,
            "created_match_ids": self.created_match_ids,
            "bye_match_ids": self.bye_match_ids,
            "swiss_round_generated": self.swiss_round_generated,
            "tournament_completed": self.tournament_completed,
            "champion_team_id": self.champion_team_id,
        }


def topology_for(tournament: Tournament) -> BracketTopology:
    return BracketTopology(
        tournament.team_count,
        double_elimination=tournament.format == TournamentFormat.double_elimination.value,
    )


def new_match(tournament: Tournament, key: MatchKey, championship: bool = False, **fields) -> Match:
    bracket, round_number, match_number = key
    return Match(
        tournament_id=tournament.id,
        bracket=bracket,
        round_number=round_number,
        match_number=match_number,
        best_of=tournament.finals_best_of if championship else tournament.best_of,
        map_pool=list(tournament.map_pool) if tournament.map_pool else list(DEFAULT_MAP_POOL),
        **fields,
    )


def bye_fields(team_id: int, slot: int, now: datetime) -> Dict[str, Any]:
    """Column values for a match won by a bye with the team in the given slot."""
    win, lose = BYE_SCORE
    return {
        f"team{slot}_id": team_id,
        "team1_score": win if slot == 1 else lose,
        "team2_score": lose if slot == 1 else win,
        "winner_team_id": team_id,
        "is_complete": True,
        "is_bye": True,
        "match_state": MatchState.complete.value,
        "completed_at": now,
    }


def _find_match(session: Session, tournament_id: int, key: MatchKey) -> Optional[Match]:
    bracket, round_number, match_number = key
    return session.exec(
        select(Match).where(
            Match.tournament_id == tournament_id,
            Match.bracket == bracket,
            Match.round_number == round_number,
            Match.match_number == match_number,
        )
    ).first()


def _get_or_create_match(
    session: Session,
    tournament: Tournament,
    key: MatchKey,
    result: AdvancementResult,
    championship: bool = False,
    **fields,
) -> Match:
    existing = _find_match(session, tournament.id, key)
    if existing:
        return existing

    match = new_match(tournament, key, championship=championship, **fields)
    session.add(match)
    try:
        session.commit()
    except IntegrityError:
        # Another completion created it first
        session.rollback()
        existing = _find_match(session, tournament.id, key)
        if existing is None:
            raise
        return existing
    session.refresh(match)
    result.created_match_ids.append(match.id)
    logger.info(f"Created match {match.id} at {key[0]} R{key[1]} M{key[2]} (tournament {tournament.id})")
    return match


def _fill_slot(
    session: Session,
    tournament: Tournament,
    topology: BracketTopology,
    target: SlotRef,
    team_id: int,
    result: AdvancementResult,
) -> None:
    other_slot = 2 if target.slot == 1 else 1
    other_void = topology.slot_is_void(target.bracket, target.round_number, target.match_number, other_slot)
    championship = topology.is_championship(target.bracket, target.round_number)

    for _ in range(MAX_FILL_ATTEMPTS):
        match = _get_or_create_match(session, tournament, target.match_key, result, championship=championship)
        session.refresh(match)

        current = match.team_in_slot(target.slot)
        if current == team_id:
            return
        if current is not None:
            logger.error(
                f"Slot conflict on match {match.id} slot {target.slot}: holds {current}, advancing {team_id}"
            )
            raise SlotOccupied(
                f"Match {match.id} slot {target.slot} already holds team {current}",
                match_id=match.id,
            )

        if other_void:
            changes = bye_fields(team_id, target.slot, datetime.utcnow())
        else:
            changes = {f"team{target.slot}_id": team_id}

        try:
            compare_and_swap_match(session, match.id, match.version, changes)
        except StaleState:
            continue

        result.filled_slots.append({"match_id": match.id, "slot": target.slot, "team_id": team_id})
        if other_void:
            result.bye_match_ids.append(match.id)
            logger.info(f"Match {match.id}: team {team_id} advances on a bye")
            _advance_elimination(session, tournament, topology, session.get(Match, match.id), result)
        return

    raise StaleState(
        f"Could not fill slot {target.slot} of {target.match_key} after {MAX_FILL_ATTEMPTS} attempts"
    )


def _advance_elimination(
    session: Session,
    tournament: Tournament,
    topology: BracketTopology,
    match: Match,
    result: AdvancementResult,
) -> None:
    key = (match.bracket, match.round_number, match.match_number)

    if match.bracket == GF:
        if match.round_number == 1 and match.winner_team_id != match.team1_id:
            # Losers-bracket champion took the first final: bracket reset
            _get_or_create_match(
                session, tournament, (GF, 2, 1), result, championship=True,
                team1_id=match.team1_id, team2_id=match.team2_id,
            )
            return
        _complete_tournament(session, tournament.id, match.winner_team_id, result)
        return

    winner_target = topology.winner_target(*key)
    if winner_target is None:
        _complete_tournament(session, tournament.id, match.winner_team_id, result)
        return
    _fill_slot(session, tournament, topology, winner_target, match.winner_team_id, result)

    loser_id = match.loser_team_id()
    loser_target = topology.loser_target(*key)
    if loser_id is not None and loser_target is not None:
        _fill_slot(session, tournament, topology, loser_target, loser_id, result)


# -----------------------------------------------------------------------------
# Swiss
# -----------------------------------------------------------------------------

def swiss_matches(session: Session, tournament_id: int) -> List[Match]:
    return list(session.exec(
        select(Match)
        .where(Match.tournament_id == tournament_id, Match.bracket == SWISS)
        .order_by(Match.round_number, Match.match_number)
    ).all())


def stage_swiss_round(session: Session, tournament: Tournament, round_number: int) -> List[Match]:
    """Pair one Swiss round and add its matches to the session without committing."""
    teams = session.exec(select(Team).where(Team.tournament_id == tournament.id)).all()
    played = swiss_matches(session, tournament.id)
    standings = swiss_standings(teams, played)
    plan = pair_swiss_round(standings, pairing_history(played), bye_history(played))

    now = datetime.utcnow()
    matches: List[Match] = []
    for number, (team1_id, team2_id) in enumerate(plan.pairings, start=1):
        matches.append(new_match(tournament, (SWISS, round_number, number), team1_id=team1_id, team2_id=team2_id))
    if plan.bye_team_id is not None:
        key = (SWISS, round_number, len(plan.pairings) + 1)
        matches.append(new_match(tournament, key, **bye_fields(plan.bye_team_id, 1, now)))

    if plan.repeat_pairings:
        logger.warning(
            f"Swiss round {round_number} of tournament {tournament.id} repeats {plan.repeat_pairings} pairing(s)"
        )
    for m in matches:
        session.add(m)
    return matches


def create_swiss_round(session: Session, tournament: Tournament, round_number: int) -> List[int]:
    """
    Pair and persist one Swiss round in a single transaction.

    Returns the created match ids, or [] when the round already exists.
    """
    matches = stage_swiss_round(session, tournament, round_number)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.info(f"Swiss round {round_number} of tournament {tournament.id} already generated")
        return []

    logger.info(f"Generated Swiss round {round_number} for tournament {tournament.id}: {len(matches)} matches")
    return [m.id for m in matches]


def _advance_swiss(session: Session, tournament: Tournament, match: Match, result: AdvancementResult) -> None:
    matches = swiss_matches(session, tournament.id)
    current_round = max(m.round_number for m in matches)
    if match.round_number != current_round:
        return
    if any(not m.is_complete for m in matches if m.round_number == current_round):
        return

    total_rounds = tournament.swiss_rounds or default_swiss_rounds(tournament.team_count or 2)
    if current_round >= total_rounds:
        teams = session.exec(select(Team).where(Team.tournament_id == tournament.id)).all()
        standings = swiss_standings(teams, matches)
        _complete_tournament(session, tournament.id, standings[0].team_id, result)
        return

    created = create_swiss_round(session, tournament, current_round + 1)
    if created:
        result.created_match_ids.extend(created)
        result.swiss_round_generated = current_round + 1


# -----------------------------------------------------------------------------
# Completion
# -----------------------------------------------------------------------------

def _complete_tournament(
    session: Session, tournament_id: int, champion_team_id: int, result: AdvancementResult
) -> None:
    now = datetime.utcnow()
    outcome = session.exec(
        update(Tournament)
        .where(Tournament.id == tournament_id, Tournament.status != TournamentStatus.completed.value)
        .values(
            status=TournamentStatus.completed.value,
            champion_team_id=champion_team_id,
            completed_at=now,
            updated_at=now,
        )
    )
    if outcome.rowcount != 1:
        session.rollback()
        return
    session.commit()

    result.tournament_completed = True
    result.champion_team_id = champion_team_id
    logger.info(f"Tournament {tournament_id} completed, champion team {champion_team_id}")
    publish(MatchEvent(
        event_type=EVENT_TOURNAMENT_COMPLETED,
        tournament_id=tournament_id,
        team_ids=[champion_team_id],
        payload={"champion_team_id": champion_team_id},
    ))


def on_match_complete(session: Session, match_id: int) -> AdvancementResult:
    """
    Propagate a completed match. Safe to call any number of times.

    Raises:
        InvalidTransition: the match has no result yet
        SlotOccupied: a downstream slot holds a different team
    """
    match = require_match(session, match_id)
    if not match.is_complete or match.winner_team_id is None:
        raise InvalidTransition(f"Match {match_id} has no result to advance", match_id=match_id)

    result = AdvancementResult(match_id=match_id)
    tournament = session.get(Tournament, match.tournament_id)
    if tournament.status == TournamentStatus.completed.value:
        return result

    if match.bracket == SWISS:
        _advance_swiss(session, tournament, match, result)
    else:
        _advance_elimination(session, tournament, topology_for(tournament), match, result)

    if result.filled_slots or result.created_match_ids or result.tournament_completed:
        logger.info(
            f"Advanced match {match_id}: {len(result.filled_slots)} slot(s) filled, "
            f"{len(result.created_match_ids)} match(es) created"
        )
    return result


def resolve_all_completions(session: Session, tournament_id: int) -> Dict:
    """
    Replay every completed match of a tournament through advancement.

    Admin repair for a crash between a match commit and its advancement.

    Returns:
        Dict with:
        - matches_processed: completed matches replayed
        - slots_filled: downstream slots written by the replay
        - matches_created: downstream matches created by the replay
        - unresolved_before / unresolved_after: non-bye matches with an empty slot
    """
    def unresolved() -> int:
        session.expire_all()
        rows = session.exec(select(Match).where(Match.tournament_id == tournament_id)).all()
        return sum(1 for m in rows if not m.is_bye and (m.team1_id is None or m.team2_id is None))

    unresolved_before = unresolved()
    completed = session.exec(
        select(Match)
        .where(Match.tournament_id == tournament_id, Match.is_complete == True)  # noqa: E712
        .order_by(Match.id)
    ).all()
    completed_ids = [m.id for m in completed]

    slots_filled = 0
    matches_created = 0
    for mid in completed_ids:
        result = on_match_complete(session, mid)
        slots_filled += len(result.filled_slots)
        matches_created += len(result.created_match_ids)

    return {
        "matches_processed": len(completed_ids),
        "slots_filled": slots_filled,
        "matches_created": matches_created,
        "unresolved_before": unresolved_before,
        "unresolved_after": unresolved(),
    }
