"""Map veto: alternating bans down to the terminal map count."""
import pytest

from app.models.map_veto import MapVetoEntry
from app.models.match import Match
from app.services.engine_errors import InvalidMap, InvalidTransition, OutOfTurn
from app.services.veto_engine import (
    DEFAULT_MAP_POOL,
    apply_ban,
    next_veto_action,
    terminal_map_count,
    validate_map_pool,
)

TEAM1 = 10
TEAM2 = 20


def _match(best_of="BO1", first_slot=1, pool=None) -> Match:
    return Match(
        id=1,
        tournament_id=1,
        round_number=1,
        match_number=1,
        best_of=best_of,
        team1_id=TEAM1,
        team2_id=TEAM2,
        map_pool=list(pool or DEFAULT_MAP_POOL),
        veto_first_slot=first_slot,
    )


def _run_veto(match: Match):
    """Ban the first remaining map on every turn; return (entries, outcomes)."""
    entries = []
    outcomes = []
    while True:
        turn = next_veto_action(match, entries)
        if turn.complete:
            return entries, outcomes
        outcome = apply_ban(match, entries, turn.acting_team_id, turn.remaining_maps[0])
        outcomes.append(outcome)
        entries.append(MapVetoEntry(
            match_id=match.id,
            sequence=outcome.sequence,
            team_id=outcome.team_id,
            map_name=outcome.map_name,
        ))


class TestTurnOrder:
    def test_first_ban_belongs_to_slot_one_by_default(self):
        turn = next_veto_action(_match(), [])
        assert turn.acting_team_id == TEAM1
        assert turn.bans_needed == 6
        assert turn.bans_made == 0
        assert not turn.complete

    def test_bans_alternate_strictly(self):
        _, outcomes = _run_veto(_match())
        assert [o.team_id for o in outcomes] == [TEAM1, TEAM2, TEAM1, TEAM2, TEAM1, TEAM2]

    def test_veto_first_slot_two_starts_with_team_two(self):
        _, outcomes = _run_veto(_match(first_slot=2))
        assert outcomes[0].team_id == TEAM2
        assert outcomes[1].team_id == TEAM1

    def test_out_of_turn_ban_rejected(self):
        with pytest.raises(OutOfTurn):
            apply_ban(_match(), [], TEAM2, "Bind")


class TestTermination:
    def test_bo1_ends_with_one_map(self):
        entries, outcomes = _run_veto(_match("BO1"))
        assert len(entries) == len(DEFAULT_MAP_POOL) - 1
        assert outcomes[-1].complete
        assert outcomes[-1].series_maps == ["Sunset"]
        assert all(not o.complete for o in outcomes[:-1])

    def test_bo3_ends_with_three_maps_in_pool_order(self):
        entries, outcomes = _run_veto(_match("BO3"))
        assert len(entries) == len(DEFAULT_MAP_POOL) - 3
        assert outcomes[-1].series_maps == ["Pearl", "Split", "Sunset"]

    def test_ban_after_completion_rejected(self):
        match = _match("BO1")
        entries, _ = _run_veto(match)
        with pytest.raises(InvalidTransition):
            apply_ban(match, entries, TEAM1, "Sunset")

    def test_pool_at_terminal_size_needs_no_bans(self):
        turn = next_veto_action(_match("BO3", pool=["Bind", "Haven", "Split"]), [])
        assert turn.complete
        assert turn.bans_needed == 0


class TestMapValidation:
    def test_unknown_map_rejected(self):
        with pytest.raises(InvalidMap):
            apply_ban(_match(), [], TEAM1, "Dust2")

    def test_already_banned_map_rejected(self):
        match = _match()
        first = apply_ban(match, [], TEAM1, "Bind")
        entries = [MapVetoEntry(match_id=1, sequence=1, team_id=TEAM1, map_name=first.map_name)]
        with pytest.raises(InvalidMap):
            apply_ban(match, entries, TEAM2, "Bind")

    def test_remaining_maps_shrink_by_one(self):
        outcome = apply_ban(_match(), [], TEAM1, "Haven")
        assert "Haven" not in outcome.remaining_maps
        assert len(outcome.remaining_maps) == len(DEFAULT_MAP_POOL) - 1
        assert outcome.sequence == 1

    def test_pool_with_duplicates_rejected(self):
        with pytest.raises(InvalidMap):
            validate_map_pool(["Bind", "Bind", "Haven"], "BO1")

    def test_pool_smaller_than_series_rejected(self):
        with pytest.raises(InvalidMap):
            validate_map_pool(["Bind", "Haven"], "BO3")

    def test_unknown_format_rejected(self):
        with pytest.raises(InvalidTransition):
            terminal_map_count("BO5")
