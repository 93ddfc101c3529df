"""Match operations against the database: authorization, versioning, veto transcript, disputes, timeouts."""
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, select

from app.models.map_veto import MapVetoEntry
from app.models.match import Match, MatchState
from app.models.match_dispute import MatchDispute
from app.models.team import Team
from app.services import match_service
from app.services.bracket_builder import create_bracket
from app.services.engine_errors import (
    DuplicateDispute,
    InsufficientRoster,
    InvalidTransition,
    OutOfTurn,
    StaleState,
    Unauthorized,
)
from app.utils.actor import Actor
from app.utils.version_guards import compare_and_swap_match
from tests.helpers import ADMIN, captain, create_team, create_teams, create_tournament, play_to_playing, reload

NOW = datetime(2026, 3, 1, 18, 0, 0)


@pytest.fixture
def four_team_bracket(session: Session):
    """Single elimination, seeds 1-4: M1 = T1 v T2, M2 = T3 v T4."""
    tournament = create_tournament(session)
    teams = create_teams(session, tournament.id, 4)
    create_bracket(session, tournament.id)
    matches = session.exec(
        select(Match).where(Match.tournament_id == tournament.id).order_by(Match.match_number)
    ).all()
    return tournament, teams, matches


class TestAuthorization:
    def test_non_captain_cannot_ready(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        match_service.open_ready_up(session, m1.id, ADMIN, m1.version)
        member = Actor(user_id=f"{teams[0].tag.lower()}-3")
        with pytest.raises(Unauthorized):
            match_service.set_ready(session, m1.id, member, teams[0].id, reload(session, m1.id).version)

    def test_team_outside_match_cannot_act(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        match_service.open_ready_up(session, m1.id, ADMIN, m1.version)
        with pytest.raises(Unauthorized):
            match_service.set_ready(session, m1.id, captain(teams[2]), teams[2].id, reload(session, m1.id).version)

    def test_admin_actions_require_admin(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        with pytest.raises(Unauthorized):
            match_service.force_forfeit(session, m1.id, captain(teams[0]), teams[0].id, m1.version)

    def test_captain_can_open_ready_up(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        result = match_service.open_ready_up(session, m1.id, captain(teams[1]), m1.version, team_id=teams[1].id)
        assert result.match.match_state == MatchState.ready_up.value


class TestReadyUp:
    def test_short_roster_blocks_ready_up(self, session):
        tournament = create_tournament(session)
        create_team(session, tournament.id, "FULL", seed=1)
        create_team(session, tournament.id, "SHORT", seed=2, active_count=4)
        create_bracket(session, tournament.id)
        match = session.exec(select(Match).where(Match.tournament_id == tournament.id)).one()

        with pytest.raises(InsufficientRoster):
            match_service.open_ready_up(session, match.id, ADMIN, match.version)
        assert reload(session, match.id).match_state == MatchState.scheduled.value

    def test_both_ready_moves_to_veto(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        match_service.open_ready_up(session, m1.id, ADMIN, m1.version, now=NOW)
        match_service.set_ready(session, m1.id, captain(teams[0]), teams[0].id, reload(session, m1.id).version, now=NOW)
        result = match_service.set_ready(
            session, m1.id, captain(teams[1]), teams[1].id, reload(session, m1.id).version, now=NOW
        )
        assert result.match.match_state == MatchState.map_banning.value
        assert result.match.ready_deadline is None

    def test_sweep_forfeits_expired_ready_up(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        match_service.open_ready_up(session, m1.id, ADMIN, m1.version, now=NOW)
        match_service.set_ready(session, m1.id, captain(teams[1]), teams[1].id, reload(session, m1.id).version, now=NOW)

        early = match_service.expire_ready_timeouts(session, now=NOW + timedelta(minutes=10))
        assert early.expired == []

        result = match_service.expire_ready_timeouts(session, now=NOW + timedelta(minutes=16))
        assert result.expired == [m1.id]
        match = reload(session, m1.id)
        assert match.is_complete
        assert match.forfeit
        assert match.winner_team_id == teams[1].id

    def test_sweep_reports_matches_nobody_readied(self, session, four_team_bracket):
        _, _, matches = four_team_bracket
        m1 = matches[0]
        match_service.open_ready_up(session, m1.id, ADMIN, m1.version, now=NOW)
        result = match_service.expire_ready_timeouts(session, now=NOW + timedelta(minutes=16))
        assert result.needs_admin == [m1.id]
        assert reload(session, m1.id).match_state == MatchState.ready_up.value


class TestVersioning:
    def test_stale_version_rejected_without_writing(self, session, four_team_bracket):
        _, _, matches = four_team_bracket
        m1 = matches[0]
        stale = m1.version
        match_service.open_ready_up(session, m1.id, ADMIN, stale)
        before = reload(session, m1.id)

        with pytest.raises(StaleState):
            match_service.cancel_match(session, m1.id, ADMIN, stale)
        after = reload(session, m1.id)
        assert after.version == before.version
        assert after.match_state == MatchState.ready_up.value

    def test_every_transition_bumps_version(self, session, four_team_bracket):
        _, _, matches = four_team_bracket
        m1 = matches[0]
        before = m1.version
        result = match_service.open_ready_up(session, m1.id, ADMIN, before)
        assert result.match.version == before + 1

    def test_cas_miss_leaves_row_untouched(self, session, four_team_bracket):
        _, _, matches = four_team_bracket
        m1 = matches[0]
        version = m1.version
        compare_and_swap_match(session, m1.id, version, {"veto_first_slot": 2})
        with pytest.raises(StaleState):
            compare_and_swap_match(session, m1.id, version, {"veto_first_slot": 1})
        match = reload(session, m1.id)
        assert match.veto_first_slot == 2
        assert match.version == version + 1

    def test_concurrent_submissions_only_one_wins(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = play_to_playing(session, matches[0].id)
        seen_version = m1.version

        match_service.submit_score(session, m1.id, captain(teams[0]), teams[0].id, 13, 7, seen_version)
        with pytest.raises(StaleState):
            match_service.submit_score(session, m1.id, captain(teams[1]), teams[1].id, 7, 13, seen_version)

        match = reload(session, m1.id)
        assert match.match_state == MatchState.waiting_results.value
        assert match.team2_submission is None

    def test_duplicate_veto_row_rolls_back_transition(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        version = m1.version
        session.add(MapVetoEntry(match_id=m1.id, attempt=1, sequence=1, team_id=teams[0].id, map_name="Bind"))
        session.commit()

        # A second writer stages the same ban sequence
        session.add(MapVetoEntry(match_id=m1.id, attempt=1, sequence=1, team_id=teams[1].id, map_name="Haven"))
        with pytest.raises(StaleState):
            compare_and_swap_match(session, m1.id, version, {"veto_first_slot": 2})

        entries = session.exec(select(MapVetoEntry)).all()
        assert [e.map_name for e in entries] == ["Bind"]
        match = reload(session, m1.id)
        assert match.veto_first_slot == 1
        assert match.version == version


class TestVeto:
    def _to_banning(self, session, match, teams):
        match_service.open_ready_up(session, match.id, ADMIN, match.version)
        for team in teams:
            match_service.set_ready(session, match.id, captain(team), team.id, reload(session, match.id).version)

    def test_out_of_turn_ban_rejected(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        self._to_banning(session, m1, teams[:2])
        with pytest.raises(OutOfTurn):
            match_service.ban_map(session, m1.id, captain(teams[1]), teams[1].id, "Bind", reload(session, m1.id).version)

    def test_transcript_recorded_in_order(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        self._to_banning(session, m1, teams[:2])
        match_service.ban_map(session, m1.id, captain(teams[0]), teams[0].id, "Bind", reload(session, m1.id).version)
        match_service.ban_map(session, m1.id, captain(teams[1]), teams[1].id, "Haven", reload(session, m1.id).version)

        turn, entries = match_service.veto_status(session, m1.id)
        assert [(e.sequence, e.team_id, e.map_name) for e in entries] == [
            (1, teams[0].id, "Bind"),
            (2, teams[1].id, "Haven"),
        ]
        assert turn.acting_team_id == teams[0].id

    def test_admin_swaps_ban_order_before_first_ban(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        self._to_banning(session, m1, teams[:2])
        match_service.set_veto_order(session, m1.id, ADMIN, teams[1].id, reload(session, m1.id).version)
        turn, _ = match_service.veto_status(session, m1.id)
        assert turn.acting_team_id == teams[1].id

    def test_cancel_starts_new_attempt_and_keeps_history(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        self._to_banning(session, m1, teams[:2])
        match_service.ban_map(session, m1.id, captain(teams[0]), teams[0].id, "Bind", reload(session, m1.id).version)

        result = match_service.cancel_match(session, m1.id, ADMIN, reload(session, m1.id).version, note="server crash")
        assert result.match.match_state == MatchState.scheduled.value
        assert result.match.veto_attempt == 2

        turn, entries = match_service.veto_status(session, m1.id)
        assert entries == []
        assert "Bind" in turn.remaining_maps
        assert len(session.exec(select(MapVetoEntry).where(MapVetoEntry.match_id == m1.id)).all()) == 1


class TestResults:
    def test_matching_reports_complete_and_advance(self, session, four_team_bracket, events):
        _, teams, matches = four_team_bracket
        m1 = play_to_playing(session, matches[0].id)
        match_service.submit_score(session, m1.id, captain(teams[0]), teams[0].id, 13, 7, m1.version)
        result = match_service.submit_score(
            session, m1.id, captain(teams[1]), teams[1].id, 13, 7, reload(session, m1.id).version
        )

        assert result.match.is_complete
        assert result.match.winner_team_id == teams[0].id
        assert result.advancement is not None
        assert result.advancement.filled_slots[0]["team_id"] == teams[0].id
        assert "match_completed" in [e.event_type for e in events]

    def test_conflicting_reports_open_dispute(self, session, four_team_bracket, events):
        _, teams, matches = four_team_bracket
        m1 = play_to_playing(session, matches[0].id)
        match_service.submit_score(session, m1.id, captain(teams[0]), teams[0].id, 13, 7, m1.version)
        result = match_service.submit_score(
            session, m1.id, captain(teams[1]), teams[1].id, 7, 13, reload(session, m1.id).version
        )

        assert result.match.match_state == MatchState.disputed.value
        assert result.match.winner_team_id is None
        assert result.advancement is None

        dispute = session.exec(select(MatchDispute).where(MatchDispute.match_id == m1.id)).one()
        assert dispute.reason == "score_mismatch"
        assert dispute.status == "open"
        assert dispute.team1_submission["team1_score"] == 13
        assert dispute.team2_submission["team1_score"] == 7
        assert "dispute_opened" in [e.event_type for e in events]

    def test_no_further_submissions_while_disputed(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = play_to_playing(session, matches[0].id)
        match_service.submit_score(session, m1.id, captain(teams[1]), teams[1].id, 7, 13, m1.version)
        match_service.flag_dispute(
            session, m1.id, captain(teams[0]), teams[0].id, 13, 7, "lag", reload(session, m1.id).version
        )
        with pytest.raises(InvalidTransition):
            match_service.submit_score(
                session, m1.id, captain(teams[1]), teams[1].id, 13, 7, reload(session, m1.id).version
            )
        with pytest.raises(DuplicateDispute):
            match_service.flag_dispute(
                session, m1.id, captain(teams[1]), teams[1].id, 13, 7, "again", reload(session, m1.id).version
            )

    def test_manual_dispute_stores_both_reports(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = play_to_playing(session, matches[0].id)
        with pytest.raises(InvalidTransition):
            match_service.flag_dispute(session, m1.id, captain(teams[0]), teams[0].id, 13, 7, "lag", m1.version)

        match_service.submit_score(session, m1.id, captain(teams[1]), teams[1].id, 7, 13, m1.version)
        result = match_service.flag_dispute(
            session, m1.id, captain(teams[0]), teams[0].id, 13, 7, "they left early", reload(session, m1.id).version
        )
        assert result.match.match_state == MatchState.disputed.value
        assert result.match.team1_submission["team1_score"] == 13
        assert result.match.team2_submission["team1_score"] == 7

        dispute = session.exec(select(MatchDispute).where(MatchDispute.match_id == m1.id)).one()
        assert dispute.reason == "manual_dispute"
        assert dispute.note == "they left early"
        assert dispute.team1_submission["team1_score"] == 13
        assert dispute.team2_submission["team1_score"] == 7

    def test_force_forfeit_closes_open_dispute(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = play_to_playing(session, matches[0].id)
        match_service.submit_score(session, m1.id, captain(teams[1]), teams[1].id, 7, 13, m1.version)
        match_service.flag_dispute(
            session, m1.id, captain(teams[0]), teams[0].id, 13, 7, "no show", reload(session, m1.id).version
        )
        result = match_service.force_forfeit(
            session, m1.id, ADMIN, teams[0].id, reload(session, m1.id).version, note="opponent left"
        )
        assert result.match.forfeit
        assert (result.match.team1_score, result.match.team2_score) == (1, 0)
        dispute = session.exec(select(MatchDispute).where(MatchDispute.match_id == m1.id)).one()
        assert dispute.status == "cancelled"
        assert dispute.admin_id == ADMIN.user_id

    def test_complete_match_rejects_everything(self, session, four_team_bracket):
        _, teams, matches = four_team_bracket
        m1 = matches[0]
        match_service.force_forfeit(session, m1.id, ADMIN, teams[0].id, m1.version)
        with pytest.raises(InvalidTransition):
            match_service.cancel_match(session, m1.id, ADMIN, reload(session, m1.id).version)
        assert session.get(Team, teams[0].id) is not None
