"""
Map veto rules: stateless ban sequencing over a fixed map pool.

Teams ban alternately by slot, starting with match.veto_first_slot, until the
terminal map count is left:
  BO1 -> 1 map  (pool - 1 bans), the played map
  BO3 -> 3 maps (pool - 3 bans), the series map list in pool order

Nothing here touches the database; callers pass the match row and the veto
entries of the current attempt.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from app.models.map_veto import MapVetoEntry
from app.models.match import Match
from app.services.engine_errors import InvalidMap, InvalidTransition, OutOfTurn

DEFAULT_MAP_POOL: List[str] = [
    "Abyss",
    "Bind",
    "Corrode",
    "Haven",
    "Pearl",
    "Split",
    "Sunset",
]

TERMINAL_MAP_COUNT = {"BO1": 1, "BO3": 3}


@dataclass
class VetoTurn:
    acting_team_id: Optional[int]
    acting_slot: Optional[int]
    remaining_maps: List[str]
    bans_made: int
    bans_needed: int
    complete: bool


@dataclass
class VetoOutcome:
    sequence: int
    team_id: int
    map_name: str
    remaining_maps: List[str]
    complete: bool
    series_maps: Optional[List[str]]  # set once complete


def terminal_map_count(best_of: str) -> int:
    try:
        return TERMINAL_MAP_COUNT[best_of]
    except KeyError:
        raise InvalidTransition(f"Unsupported match format '{best_of}'") from None


def validate_map_pool(pool: Sequence[str], best_of: str) -> None:
    if len(set(pool)) != len(pool):
        raise InvalidMap("Map pool contains duplicates")
    if len(pool) < terminal_map_count(best_of):
        raise InvalidMap(f"{best_of} needs at least {terminal_map_count(best_of)} maps, pool has {len(pool)}")


def pool_for(match: Match) -> List[str]:
    return list(match.map_pool) if match.map_pool else list(DEFAULT_MAP_POOL)


def remaining_maps(pool: Sequence[str], entries: Sequence[MapVetoEntry]) -> List[str]:
    banned = {e.map_name for e in entries}
    return [m for m in pool if m not in banned]


def slot_for_ban(first_slot: int, ban_index: int) -> int:
    """Slot acting on the ban_index-th ban (0-based): first, other, first, ..."""
    if ban_index % 2 == 0:
        return first_slot
    return 2 if first_slot == 1 else 1


def next_veto_action(match: Match, entries: Sequence[MapVetoEntry]) -> VetoTurn:
    pool = pool_for(match)
    remaining = remaining_maps(pool, entries)
    bans_needed = max(0, len(pool) - terminal_map_count(match.best_of))
    bans_made = len(entries)
    if bans_made >= bans_needed:
        return VetoTurn(
            acting_team_id=None,
            acting_slot=None,
            remaining_maps=remaining,
            bans_made=bans_made,
            bans_needed=bans_needed,
            complete=True,
        )
    slot = slot_for_ban(match.veto_first_slot, bans_made)
    return VetoTurn(
        acting_team_id=match.team_in_slot(slot),
        acting_slot=slot,
        remaining_maps=remaining,
        bans_made=bans_made,
        bans_needed=bans_needed,
        complete=False,
    )


def apply_ban(match: Match, entries: Sequence[MapVetoEntry], team_id: int, map_name: str) -> VetoOutcome:
    """
    Validate one ban and compute the resulting veto position.

    Raises:
        InvalidTransition: veto already finished
        OutOfTurn: team_id is not the acting team
        InvalidMap: map unknown to the pool or already banned
    """
    turn = next_veto_action(match, entries)
    if turn.complete:
        raise InvalidTransition("Map veto is already complete", match_id=match.id)
    if team_id != turn.acting_team_id:
        raise OutOfTurn(f"It is team {turn.acting_team_id}'s turn to ban", match_id=match.id)

    pool = pool_for(match)
    if map_name not in pool:
        raise InvalidMap(f"'{map_name}' is not in the map pool", match_id=match.id)
    if map_name not in turn.remaining_maps:
        raise InvalidMap(f"'{map_name}' has already been banned", match_id=match.id)

    remaining = [m for m in turn.remaining_maps if m != map_name]
    complete = turn.bans_made + 1 >= turn.bans_needed
    return VetoOutcome(
        sequence=turn.bans_made + 1,
        team_id=team_id,
        map_name=map_name,
        remaining_maps=remaining,
        complete=complete,
        series_maps=remaining if complete else None,
    )
