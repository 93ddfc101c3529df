"""Admin dispute resolution: dismiss, override, audit trail."""
import pytest
from sqlmodel import select

from app.models.match import Match, MatchState
from app.models.match_dispute import DISPUTE_DISMISSED, DISPUTE_OPEN, DISPUTE_OVERRIDDEN, MatchDispute
from app.services import match_service
from app.services.bracket_builder import create_bracket
from app.services.dispute_resolver import DisputeDecision, list_disputes, resolve
from app.services.engine_errors import InvalidTransition, StaleState, TieScoreRejected, Unauthorized
from tests.helpers import ADMIN, captain, create_teams, create_tournament, play_to_playing, reload


@pytest.fixture
def disputed(session):
    """M1 (T1 v T2) disputed after 13-7 / 7-13 reports."""
    tournament = create_tournament(session)
    teams = create_teams(session, tournament.id, 4)
    create_bracket(session, tournament.id)
    m1 = session.exec(
        select(Match).where(Match.tournament_id == tournament.id, Match.match_number == 1)
    ).one()
    m1 = play_to_playing(session, m1.id)
    match_service.submit_score(session, m1.id, captain(teams[0]), teams[0].id, 13, 7, m1.version)
    match_service.submit_score(session, m1.id, captain(teams[1]), teams[1].id, 7, 13, reload(session, m1.id).version)
    return tournament, teams, reload(session, m1.id)


class TestOverride:
    def test_override_completes_and_advances(self, session, disputed):
        _, teams, match = disputed
        result = resolve(session, match.id, ADMIN, DisputeDecision.override, match.version,
                         team1_score=13, team2_score=9, note="checked the demo")

        assert result.match.is_complete
        assert result.match.winner_team_id == teams[0].id
        assert (result.match.team1_score, result.match.team2_score) == (13, 9)
        assert result.advancement.filled_slots

        dispute = session.exec(select(MatchDispute).where(MatchDispute.match_id == match.id)).one()
        assert dispute.status == DISPUTE_OVERRIDDEN
        assert (dispute.final_team1_score, dispute.final_team2_score) == (13, 9)
        assert dispute.admin_id == ADMIN.user_id
        assert dispute.resolution_note == "checked the demo"
        assert dispute.resolved_at is not None

    def test_tied_override_rejected(self, session, disputed):
        _, _, match = disputed
        with pytest.raises(TieScoreRejected):
            resolve(session, match.id, ADMIN, DisputeDecision.override, match.version, team1_score=7, team2_score=7)
        assert reload(session, match.id).match_state == MatchState.disputed.value
        dispute = session.exec(select(MatchDispute).where(MatchDispute.match_id == match.id)).one()
        assert dispute.status == DISPUTE_OPEN


class TestDismiss:
    def test_dismiss_returns_to_playing_for_resubmission(self, session, disputed):
        _, teams, match = disputed
        result = resolve(session, match.id, ADMIN, DisputeDecision.dismiss, match.version)

        assert result.match.match_state == MatchState.playing.value
        assert result.match.team1_submission is None
        assert result.match.team2_submission is None

        match_service.submit_score(session, match.id, captain(teams[0]), teams[0].id, 7, 13, result.match.version)
        final = match_service.submit_score(
            session, match.id, captain(teams[1]), teams[1].id, 7, 13, reload(session, match.id).version
        )
        assert final.match.winner_team_id == teams[1].id

        dispute = session.exec(select(MatchDispute).where(MatchDispute.match_id == match.id)).one()
        assert dispute.status == DISPUTE_DISMISSED


class TestGuards:
    def test_requires_admin(self, session, disputed):
        _, teams, match = disputed
        with pytest.raises(Unauthorized):
            resolve(session, match.id, captain(teams[0]), DisputeDecision.dismiss, match.version)

    def test_requires_disputed_match(self, session, disputed):
        tournament, _, _ = disputed
        other = session.exec(
            select(Match).where(Match.tournament_id == tournament.id, Match.match_number == 2)
        ).one()
        with pytest.raises(InvalidTransition):
            resolve(session, other.id, ADMIN, DisputeDecision.dismiss, other.version)

    def test_stale_version(self, session, disputed):
        _, _, match = disputed
        with pytest.raises(StaleState):
            resolve(session, match.id, ADMIN, DisputeDecision.dismiss, match.version - 1)


class TestListing:
    def test_filters_by_status_and_tournament(self, session, disputed):
        tournament, _, match = disputed
        assert [d.match_id for d in list_disputes(session, status=DISPUTE_OPEN)] == [match.id]
        assert list_disputes(session, tournament_id=tournament.id + 1) == []

        resolve(session, match.id, ADMIN, DisputeDecision.dismiss, match.version)
        assert list_disputes(session, status=DISPUTE_OPEN) == []
        assert len(list_disputes(session)) == 1
