"""
Swiss standings and pairing (pure functions, no DB).

Standings are recomputed from completed Swiss matches every time; nothing
derived is stored. A bye counts as a win and is not an opponent.

Tie-break order:
  1. wins
  2. head-to-head wins against the other teams on the same win count
  3. cumulative opponent win percentage (mean of opponents' win rates)
  4. seed (lower first)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from app.models.match import Match
from app.models.team import Team


@dataclass
class SwissStanding:
    team_id: int
    seed: int
    wins: int = 0
    losses: int = 0
    byes: int = 0
    opponents: List[int] = field(default_factory=list)
    head_to_head: int = 0
    opponent_win_pct: Fraction = Fraction(0)
    rank: int = 0

    @property
    def played(self) -> int:
        return self.wins + self.losses


@dataclass
class SwissRoundPlan:
    pairings: List[Tuple[int, int]]
    bye_team_id: Optional[int]
    repeat_pairings: int = 0


def default_swiss_rounds(team_count: int) -> int:
    return max(1, math.ceil(math.log2(team_count))) if team_count > 1 else 1


def swiss_standings(teams: Sequence[Team], matches: Iterable[Match]) -> List[SwissStanding]:
    """Ranked standings from completed matches (incomplete ones are ignored)."""
    table: Dict[int, SwissStanding] = {
        t.id: SwissStanding(team_id=t.id, seed=t.seed if t.seed is not None else 10 ** 6)
        for t in teams
    }
    beat: Dict[int, List[int]] = {tid: [] for tid in table}

    for m in matches:
        if not m.is_complete or m.winner_team_id is None:
            continue
        winner = table.get(m.winner_team_id)
        if winner is None:
            continue
        winner.wins += 1
        if m.is_bye:
            winner.byes += 1
            continue
        loser_id = m.loser_team_id()
        loser = table.get(loser_id)
        if loser is None:
            continue
        loser.losses += 1
        winner.opponents.append(loser_id)
        loser.opponents.append(winner.team_id)
        beat[winner.team_id].append(loser_id)

    for s in table.values():
        rates = [
            Fraction(table[o].wins, table[o].played) if table[o].played else Fraction(0)
            for o in s.opponents
        ]
        s.opponent_win_pct = sum(rates, Fraction(0)) / len(rates) if rates else Fraction(0)

    by_wins: Dict[int, Set[int]] = {}
    for s in table.values():
        by_wins.setdefault(s.wins, set()).add(s.team_id)
    for s in table.values():
        group = by_wins[s.wins]
        s.head_to_head = sum(1 for o in beat[s.team_id] if o in group)

    ranked = sorted(table.values(), key=lambda s: (-s.wins, -s.head_to_head, -s.opponent_win_pct, s.seed))
    for i, s in enumerate(ranked, start=1):
        s.rank = i
    return ranked


def pairing_history(matches: Iterable[Match]) -> Set[FrozenSet[int]]:
    return {
        frozenset((m.team1_id, m.team2_id))
        for m in matches
        if m.team1_id is not None and m.team2_id is not None
    }


def bye_history(matches: Iterable[Match]) -> Set[int]:
    return {m.winner_team_id for m in matches if m.is_bye and m.winner_team_id is not None}


def _pair(
    pool: List[int],
    wins: Dict[int, int],
    history: Set[FrozenSet[int]],
    repeats_left: int,
) -> Optional[Tuple[List[Tuple[int, int]], int]]:
    """Backtracking pairing; returns (pairs, repeats used) or None."""
    if not pool:
        return [], 0
    first, rest = pool[0], pool[1:]
    # Closest win count first, then standings order
    order = sorted(range(len(rest)), key=lambda i: (abs(wins[first] - wins[rest[i]]), i))
    for i in order:
        other = rest[i]
        repeat = frozenset((first, other)) in history
        if repeat and repeats_left == 0:
            continue
        sub = _pair(rest[:i] + rest[i + 1:], wins, history, repeats_left - (1 if repeat else 0))
        if sub is not None:
            pairs, used = sub
            return [(first, other)] + pairs, used + (1 if repeat else 0)
    return None


def _bye_candidates(ranked: List[int], had_bye: Set[int]) -> List[int]:
    lowest_first = list(reversed(ranked))
    fresh = [t for t in lowest_first if t not in had_bye]
    return fresh or lowest_first


def pair_swiss_round(
    standings: Sequence[SwissStanding],
    history: Set[FrozenSet[int]],
    had_bye: Set[int],
) -> SwissRoundPlan:
    """
    Pair the next round.

    The lowest-ranked team without a previous bye sits out when the count is
    odd. Pairings never repeat while a repeat-free pairing exists; otherwise
    the pairing with the fewest repeats is used.
    """
    ranked = [s.team_id for s in standings]
    wins = {s.team_id: s.wins for s in standings}

    bye_options: List[Optional[int]] = _bye_candidates(ranked, had_bye) if len(ranked) % 2 else [None]

    for allowed_repeats in range(0, len(ranked) // 2 + 1):
        for bye in bye_options:
            pool = [t for t in ranked if t != bye]
            found = _pair(pool, wins, history, allowed_repeats)
            if found is not None:
                pairs, used = found
                return SwissRoundPlan(pairings=pairs, bye_team_id=bye, repeat_pairings=used)

    # Unreachable: with every repeat allowed the first candidate always pairs
    raise RuntimeError("Swiss pairing failed")
