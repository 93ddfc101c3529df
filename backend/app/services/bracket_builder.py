"""
Bracket construction.

build_bracket() is pure: it validates the entrants, fixes the seed order
and lays out round 1. create_bracket() persists that plan (seeds, round-1
matches, tournament status) in one transaction and then advances the
round-1 byes. Later elimination rounds are created by advancement as
results arrive; later Swiss rounds are paired when a round finishes.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.models.match import BracketSide, Match
from app.models.team import Team
from app.models.tournament import Tournament, TournamentFormat, TournamentStatus
from app.services.advancement_service import bye_fields, new_match, on_match_complete
from app.services.bracket_topology import BracketTopology, bracket_size
from app.services.engine_errors import (
    DuplicateTeam,
    InsufficientTeams,
    InvalidFormat,
    InvalidTransition,
    NotFound,
    StaleState,
)
from app.services.swiss import SwissStanding, default_swiss_rounds, pair_swiss_round, swiss_standings
from app.utils.seeding import seed_order

logger = logging.getLogger(__name__)

ELIMINATION_FORMATS = (TournamentFormat.single_elimination.value, TournamentFormat.double_elimination.value)


@dataclass
class PlannedMatch:
    bracket: str
    round_number: int
    match_number: int
    team1_id: Optional[int]
    team2_id: Optional[int]
    is_bye: bool = False


@dataclass
class BracketPlan:
    format: str
    seeded_team_ids: List[int]  # index 0 = seed 1
    bracket_size: Optional[int]
    matches: List[PlannedMatch] = field(default_factory=list)

    @property
    def seeds(self) -> Dict[int, int]:
        return {team_id: i for i, team_id in enumerate(self.seeded_team_ids, start=1)}


def build_bracket(teams: Sequence[Team], format: str, random_seed: int) -> BracketPlan:
    """
    Seed the teams and lay out round 1.

    Raises:
        InvalidFormat: unknown tournament format
        InsufficientTeams: fewer than 2 teams
        DuplicateTeam: the same team (or tag) entered twice
    """
    if format not in [f.value for f in TournamentFormat]:
        raise InvalidFormat(f"Unknown tournament format '{format}'")
    if len(teams) < 2:
        raise InsufficientTeams(f"At least 2 teams are required, got {len(teams)}")

    seen_ids = set()
    seen_tags = set()
    for t in teams:
        tag = (t.tag or "").upper()
        if t.id in seen_ids or tag in seen_tags:
            raise DuplicateTeam(f"Team {t.tag} ({t.id}) is entered more than once")
        seen_ids.add(t.id)
        seen_tags.add(tag)

    ordered = [t.id for t in seed_order(teams, random_seed)]

    if format == TournamentFormat.swiss.value:
        standings = [SwissStanding(team_id=tid, seed=i) for i, tid in enumerate(ordered, start=1)]
        pairing = pair_swiss_round(standings, set(), set())
        plan = BracketPlan(format=format, seeded_team_ids=ordered, bracket_size=None)
        for number, (a, b) in enumerate(pairing.pairings, start=1):
            plan.matches.append(PlannedMatch(BracketSide.swiss.value, 1, number, a, b))
        if pairing.bye_team_id is not None:
            plan.matches.append(PlannedMatch(
                BracketSide.swiss.value, 1, len(pairing.pairings) + 1, pairing.bye_team_id, None, is_bye=True
            ))
        return plan

    topology = BracketTopology(len(ordered), double_elimination=format == TournamentFormat.double_elimination.value)
    plan = BracketPlan(format=format, seeded_team_ids=ordered, bracket_size=bracket_size(len(ordered)))
    for number, (seed_a, seed_b) in enumerate(topology.round_one, start=1):
        plan.matches.append(PlannedMatch(
            bracket=BracketSide.winners.value,
            round_number=1,
            match_number=number,
            team1_id=ordered[seed_a - 1],
            team2_id=ordered[seed_b - 1] if seed_b is not None else None,
            is_bye=seed_b is None,
        ))
    return plan


def create_bracket(session: Session, tournament_id: int) -> Dict:
    """
    Persist seeds and round 1, and start the tournament.

    All-or-nothing: on any error nothing is written. Round-1 byes are then
    advanced like any other completed match.

    Returns:
        Dict with:
        - tournament_id
        - format
        - seeds: {team_id: seed}
        - match_ids: round-1 matches created
        - bye_match_ids: round-1 matches completed as byes
    """
    tournament = session.get(Tournament, tournament_id)
    if not tournament:
        raise NotFound(f"Tournament {tournament_id} not found")
    if tournament.status in (TournamentStatus.in_progress.value, TournamentStatus.completed.value):
        raise InvalidTransition(f"Tournament {tournament_id} bracket is already built")

    teams = session.exec(
        select(Team).where(Team.tournament_id == tournament_id, Team.registered == True)  # noqa: E712
    ).all()
    plan = build_bracket(teams, tournament.format, tournament.random_seed)

    try:
        # Clear first so renumbering never trips the (tournament, seed) constraint mid-flush
        for team in teams:
            team.seed = None
            session.add(team)
        session.flush()
        by_id = {t.id: t for t in teams}
        for team_id, seed in plan.seeds.items():
            by_id[team_id].seed = seed
            session.add(by_id[team_id])

        tournament.status = TournamentStatus.in_progress.value
        tournament.team_count = len(teams)
        tournament.bracket_size = plan.bracket_size
        if tournament.format == TournamentFormat.swiss.value and not tournament.swiss_rounds:
            tournament.swiss_rounds = default_swiss_rounds(len(teams))
        session.add(tournament)

        topology = None
        if tournament.format in ELIMINATION_FORMATS:
            topology = BracketTopology(len(teams), double_elimination=tournament.format == TournamentFormat.double_elimination.value)

        now = datetime.utcnow()
        matches: List[Match] = []
        for pm in plan.matches:
            key = (pm.bracket, pm.round_number, pm.match_number)
            championship = topology is not None and topology.is_championship(pm.bracket, pm.round_number)
            if pm.is_bye:
                m = new_match(tournament, key, championship=championship, **bye_fields(pm.team1_id, 1, now))
            else:
                m = new_match(tournament, key, championship=championship, team1_id=pm.team1_id, team2_id=pm.team2_id)
            session.add(m)
            matches.append(m)
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning(f"Bracket build for tournament {tournament_id} conflicted: {exc.orig}")
        raise StaleState(f"Tournament {tournament_id} changed while building the bracket") from exc
    except Exception:
        session.rollback()
        raise

    match_ids = [m.id for m in matches]
    bye_ids = [m.id for m in matches if m.is_bye]
    logger.info(
        f"Built {tournament.format} bracket for tournament {tournament_id}: "
        f"{len(teams)} teams, {len(match_ids)} round-1 matches, {len(bye_ids)} byes"
    )

    if topology is not None:
        for mid in bye_ids:
            on_match_complete(session, mid)

    return {
        "tournament_id": tournament_id,
        "format": tournament.format,
        "seeds": plan.seeds,
        "match_ids": match_ids,
        "bye_match_ids": bye_ids,
    }


def create_final_bracket(
    session: Session,
    source_tournament_id: int,
    qualifier_count: int = 8,
    format: str = TournamentFormat.single_elimination.value,
    name: Optional[str] = None,
) -> Dict:
    """
    Seed an elimination playoff from the current Swiss standings.

    The top qualifier_count teams are copied into a new tournament that
    inherits the stage's match settings, seeded by standing, and its
    bracket is built straight away. The Swiss stage does not have to be
    finished; its standings at call time decide who qualifies.

    Returns:
        create_bracket's result for the playoff, plus qualified_team_ids
        (source team ids in seed order).
    """
    source = session.get(Tournament, source_tournament_id)
    if not source:
        raise NotFound(f"Tournament {source_tournament_id} not found")
    if source.format != TournamentFormat.swiss.value:
        raise InvalidFormat(f"Tournament {source_tournament_id} is not a Swiss stage")
    if format not in ELIMINATION_FORMATS:
        raise InvalidFormat(f"Unsupported playoff format '{format}'")
    if source.status not in (TournamentStatus.in_progress.value, TournamentStatus.completed.value):
        raise InvalidTransition(f"Tournament {source_tournament_id} has not started")
    existing = session.exec(select(Tournament).where(Tournament.source_tournament_id == source_tournament_id)).first()
    if existing:
        raise InvalidTransition(f"Tournament {source_tournament_id} already has a playoff ({existing.id})")

    teams = session.exec(
        select(Team).where(Team.tournament_id == source_tournament_id, Team.registered == True)  # noqa: E712
    ).all()
    if qualifier_count < 2 or qualifier_count > len(teams):
        raise InsufficientTeams(f"Cannot qualify {qualifier_count} of {len(teams)} teams")
    matches = session.exec(
        select(Match).where(Match.tournament_id == source_tournament_id, Match.bracket == BracketSide.swiss.value)
    ).all()
    standings = swiss_standings(teams, matches)[:qualifier_count]
    by_id = {t.id: t for t in teams}

    try:
        playoff = Tournament(
            name=name or f"{source.name} Playoffs",
            format=format,
            target_team_count=qualifier_count,
            status=TournamentStatus.registration_open.value,
            best_of=source.best_of,
            finals_best_of=source.finals_best_of,
            random_seed=source.random_seed,
            side_selection=source.side_selection,
            ready_timeout_seconds=source.ready_timeout_seconds,
            map_pool=list(source.map_pool) if source.map_pool else None,
            source_tournament_id=source_tournament_id,
        )
        session.add(playoff)
        session.flush()
        for standing in standings:
            team = by_id[standing.team_id]
            session.add(Team(
                tournament_id=playoff.id,
                name=team.name,
                tag=team.tag,
                captain_user_id=team.captain_user_id,
                roster=[dict(m) for m in team.roster],
                active_player_ids=list(team.active_player_ids),
                seed=standing.rank,
            ))
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        f"Playoff {playoff.id} ({format}) seeded from tournament {source_tournament_id}: "
        f"top {qualifier_count} of {len(teams)}"
    )
    result = create_bracket(session, playoff.id)
    result["qualified_team_ids"] = [s.team_id for s in standings]
    return result
