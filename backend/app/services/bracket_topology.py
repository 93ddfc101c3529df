"""
Elimination bracket topology (pure functions, no DB).

Round 1 for N teams:
  S = 2^ceil(log2 N) bracket slots, S - N byes.
  Seeds 1..(S-N) get a bye; the remaining seeds pair adjacently
  (S-N+1 v S-N+2, ...). The S/2 round-1 entries are laid out in
  bracket-fold order so byes and top seeds land in different quarters:

      N=6 -> M1: 1 (bye)  M2: 5v6  M3: 2 (bye)  M4: 3v4

Routing ("where does the winner / loser of match (bracket, r, k) go"):
  winners r<R     -> winners r+1, match ceil(k/2), slot 1 if k odd else 2
  winners R       -> champion (single) | grand final slot 1 (double)
  losers of W1    -> losers 1, match ceil(k/2), slot 1 if k odd else 2
  losers of Wr>=2 -> losers 2r-2, match M+1-k (reversed), slot 2
  losers l odd    -> losers l+1, same match, slot 1
  losers l even   -> losers l+1, match ceil(k/2), slot by parity
  losers final    -> grand final slot 2

A slot is *void* when its feeder can never produce a team: a bye entry in
round 1, the loser of a bye, or the winner of a match that is itself void
on both sides. Void is static, so it is computed once per bracket shape.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from app.models.match import BracketSide

W = BracketSide.winners.value
L = BracketSide.losers.value
GF = BracketSide.grand_final.value

MatchKey = Tuple[str, int, int]  # (bracket, round_number, match_number)


@dataclass(frozen=True)
class SlotRef:
    bracket: str
    round_number: int
    match_number: int
    slot: int

    @property
    def match_key(self) -> MatchKey:
        return (self.bracket, self.round_number, self.match_number)


def bracket_size(team_count: int) -> int:
    if team_count < 2:
        return 2
    return 2 ** math.ceil(math.log2(team_count))


def bracket_fold_positions(n: int) -> List[int]:
    """Standard bracket-fold positions for *n* entries.

    Returns a flat list of entry ranks in bracket position order.
    Consecutive pairs meet if chalk holds:
      4-entry  -> [1, 4, 2, 3]       -> (1v4), (2v3)
      8-entry  -> [1, 8, 4, 5, ...]   -> (1v8), (4v5), ...
    """
    if n == 1:
        return [1]
    if n == 2:
        return [1, 2]

    half = bracket_fold_positions(n // 2)

    expanded: List[int] = []
    for s in half:
        expanded.append(s)
        expanded.append(n + 1 - s)

    mid = len(expanded) // 2
    top = expanded[:mid]
    bot = expanded[mid:]
    if len(bot) >= 4:
        bot = bot[:-4] + bot[-2:] + bot[-4:-2]

    return top + bot


def plan_round_one(team_count: int) -> List[Tuple[int, Optional[int]]]:
    """(seed_a, seed_b) per round-1 match in match order; seed_b None = bye."""
    size = bracket_size(team_count)
    byes = size - team_count

    entries: List[Tuple[int, Optional[int]]] = [(seed, None) for seed in range(1, byes + 1)]
    for seed in range(byes + 1, team_count + 1, 2):
        entries.append((seed, seed + 1))

    return [entries[rank - 1] for rank in bracket_fold_positions(size // 2)]


class BracketTopology:
    """Static shape of a single- or double-elimination bracket for N teams."""

    def __init__(self, team_count: int, double_elimination: bool = False):
        self.team_count = team_count
        self.size = bracket_size(team_count)
        self.rounds = int(math.log2(self.size))
        self.double_elimination = double_elimination
        self.losers_rounds = 2 * (self.rounds - 1) if double_elimination else 0
        self.round_one = plan_round_one(team_count)
        self._void: Dict[Tuple[str, int, int, int], bool] = {}
        self._compute_voids()

    # -- shape -----------------------------------------------------------------

    def matches_in_round(self, bracket: str, round_number: int) -> int:
        if bracket == W:
            return self.size // 2 ** round_number
        if bracket == L:
            return self.size // 2 ** ((round_number + 1) // 2 + 1)
        return 1

    def match_keys(self) -> Iterator[MatchKey]:
        """Every statically known match, feeders before the matches they feed."""
        for r in range(1, self.rounds + 1):
            for k in range(1, self.matches_in_round(W, r) + 1):
                yield (W, r, k)
        for lr in range(1, self.losers_rounds + 1):
            for k in range(1, self.matches_in_round(L, lr) + 1):
                yield (L, lr, k)
        if self.double_elimination:
            yield (GF, 1, 1)

    def is_championship(self, bracket: str, round_number: int) -> bool:
        """Matches played at finals length (final, grand final, reset)."""
        if bracket == GF:
            return True
        return bracket == W and round_number == self.rounds and not self.double_elimination

    # -- routing ---------------------------------------------------------------

    def winner_target(self, bracket: str, round_number: int, match_number: int) -> Optional[SlotRef]:
        """Slot the winner moves to; None when the winner is champion (or the grand final decides)."""
        k = match_number
        if bracket == W:
            if round_number < self.rounds:
                return SlotRef(W, round_number + 1, (k + 1) // 2, 1 if k % 2 else 2)
            if self.double_elimination:
                return SlotRef(GF, 1, 1, 1)
            return None
        if bracket == L:
            if round_number == self.losers_rounds:
                return SlotRef(GF, 1, 1, 2)
            if round_number % 2 == 1:
                return SlotRef(L, round_number + 1, k, 1)
            return SlotRef(L, round_number + 1, (k + 1) // 2, 1 if k % 2 else 2)
        return None

    def loser_target(self, bracket: str, round_number: int, match_number: int) -> Optional[SlotRef]:
        """Slot the loser drops to; None when the loser is eliminated."""
        if not self.double_elimination or bracket != W:
            return None
        k = match_number
        if round_number == 1:
            if self.rounds == 1:
                return SlotRef(GF, 1, 1, 2)
            return SlotRef(L, 1, (k + 1) // 2, 1 if k % 2 else 2)
        target_round = 2 * round_number - 2
        count = self.matches_in_round(L, target_round)
        return SlotRef(L, target_round, count + 1 - k, 2)

    # -- byes ------------------------------------------------------------------

    def slot_is_void(self, bracket: str, round_number: int, match_number: int, slot: int) -> bool:
        return self._void.get((bracket, round_number, match_number, slot), False)

    def match_is_void(self, bracket: str, round_number: int, match_number: int) -> bool:
        return (self.slot_is_void(bracket, round_number, match_number, 1)
                and self.slot_is_void(bracket, round_number, match_number, 2))

    def _compute_voids(self) -> None:
        feeders: Dict[Tuple[str, int, int, int], Tuple[MatchKey, str]] = {}
        for key in self.match_keys():
            for role, target in (("winner", self.winner_target(*key)), ("loser", self.loser_target(*key))):
                if target is not None:
                    feeders[(target.bracket, target.round_number, target.match_number, target.slot)] = (key, role)

        for key in self.match_keys():
            bracket, r, k = key
            for slot in (1, 2):
                if bracket == W and r == 1:
                    void = self.round_one[k - 1][slot - 1] is None
                else:
                    source, role = feeders[(bracket, r, k, slot)]
                    source_void = (self._void[source + (1,)], self._void[source + (2,)])
                    # A winner exists unless the source is empty; a loser needs both sides
                    void = all(source_void) if role == "winner" else any(source_void)
                self._void[(bracket, r, k, slot)] = void
