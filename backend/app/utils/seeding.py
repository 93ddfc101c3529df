"""
Seeding helpers.

Seed order is deterministic for a given tournament: teams that already have
a seed keep their relative order, the rest are shuffled with the
tournament's random_seed and appended. Final seeds are renumbered 1..N.
"""

import random
import string
from typing import List, Sequence

from sqlmodel import Session, select

from app.models.team import ACTIVE_ROSTER_SIZE, Team


def seed_order(teams: Sequence[Team], random_seed: int) -> List[Team]:
    seeded = sorted((t for t in teams if t.seed is not None), key=lambda t: (t.seed, t.id or 0))
    unseeded = sorted((t for t in teams if t.seed is None), key=lambda t: t.id or 0)
    random.Random(random_seed).shuffle(unseeded)
    return seeded + unseeded


def generate_test_teams(session: Session, tournament_id: int, count: int, random_seed: int = 0) -> List[Team]:
    """
    DEV-ONLY: Register `count` throwaway teams with full 5-player rosters.

    Tags and user ids are derived from random_seed so repeated calls with the
    same seed produce the same names; existing tags in the tournament are
    skipped. Commits once.
    """
    rng = random.Random(random_seed)
    existing = set(session.exec(select(Team.tag).where(Team.tournament_id == tournament_id)).all())
    teams: List[Team] = []
    while len(teams) < count:
        tag = "".join(rng.choice(string.ascii_uppercase) for _ in range(4))
        if tag in existing:
            continue
        existing.add(tag)
        members = [f"test-{tag.lower()}-{i}" for i in range(1, ACTIVE_ROSTER_SIZE + 1)]
        roster = [{"user_id": uid, "role": "captain" if i == 0 else "member"} for i, uid in enumerate(members)]
        team = Team(
            tournament_id=tournament_id,
            name=f"Test Team {tag}",
            tag=tag,
            captain_user_id=members[0],
            roster=roster,
            active_player_ids=list(members),
        )
        session.add(team)
        teams.append(team)
    session.commit()
    for team in teams:
        session.refresh(team)
    return teams
