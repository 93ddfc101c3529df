"""Shared builders for engine tests: tournaments, teams, and a full match protocol driver."""
from typing import List, Optional

from sqlmodel import Session

from app.models.match import Match
from app.models.team import Team
from app.models.tournament import Tournament, TournamentFormat, TournamentStatus
from app.services import match_service
from app.services.match_service import TransitionResult
from app.utils.actor import Actor

ADMIN = Actor(user_id="admin-1", is_admin=True)


def create_tournament(
    session: Session,
    name: str = "Test Cup",
    format: str = TournamentFormat.single_elimination.value,
    **fields,
) -> Tournament:
    fields.setdefault("status", TournamentStatus.registration_open.value)
    fields.setdefault("random_seed", 42)
    tournament = Tournament(name=name, format=format, **fields)
    session.add(tournament)
    session.commit()
    session.refresh(tournament)
    return tournament


def create_team(
    session: Session,
    tournament_id: int,
    tag: str,
    seed: Optional[int] = None,
    active_count: int = 5,
) -> Team:
    members = [f"{tag.lower()}-{i}" for i in range(1, 7)]
    team = Team(
        tournament_id=tournament_id,
        name=f"Team {tag}",
        tag=tag,
        captain_user_id=members[0],
        roster=[{"user_id": uid, "role": "captain" if i == 0 else "member"} for i, uid in enumerate(members)],
        active_player_ids=members[:active_count],
        seed=seed,
    )
    session.add(team)
    session.commit()
    session.refresh(team)
    return team


def create_teams(session: Session, tournament_id: int, count: int, seeded: bool = True) -> List[Team]:
    return [
        create_team(session, tournament_id, f"T{i}", seed=i if seeded else None)
        for i in range(1, count + 1)
    ]


def captain(team: Team) -> Actor:
    return Actor(user_id=team.captain_user_id)


def reload(session: Session, match_id: int) -> Match:
    session.expire_all()
    return session.get(Match, match_id)


def play_to_playing(session: Session, match_id: int) -> Match:
    """Drive a scheduled match through ready-up, veto and side selection."""
    match = reload(session, match_id)
    match_service.open_ready_up(session, match_id, ADMIN, match.version)
    for team_id in (match.team1_id, match.team2_id):
        team = session.get(Team, team_id)
        match_service.set_ready(session, match_id, captain(team), team_id, reload(session, match_id).version)

    turn, _ = match_service.veto_status(session, match_id)
    while not turn.complete:
        team = session.get(Team, turn.acting_team_id)
        match_service.ban_map(
            session, match_id, captain(team), team.id, turn.remaining_maps[0], reload(session, match_id).version
        )
        turn, _ = match_service.veto_status(session, match_id)

    match = reload(session, match_id)
    chooser = session.get(Team, match.side_chooser_team_id)
    match_service.choose_side(session, match_id, captain(chooser), chooser.id, "attack", match.version)
    return reload(session, match_id)


def play_match(session: Session, match_id: int, team1_score: int, team2_score: int) -> TransitionResult:
    """Full protocol with both teams reporting the same score."""
    match = play_to_playing(session, match_id)
    team1 = session.get(Team, match.team1_id)
    team2 = session.get(Team, match.team2_id)
    match_service.submit_score(session, match_id, captain(team1), team1.id, team1_score, team2_score, match.version)
    return match_service.submit_score(
        session, match_id, captain(team2), team2.id, team1_score, team2_score, reload(session, match_id).version
    )


def win_match(session: Session, match_id: int, winner_team_id: int) -> TransitionResult:
    match = reload(session, match_id)
    if winner_team_id == match.team1_id:
        return play_match(session, match_id, 13, 7)
    return play_match(session, match_id, 7, 13)


# HTTP helpers

ADMIN_HEADERS = {"X-User-Id": ADMIN.user_id, "X-User-Role": "admin"}


def roster_payload(tag: str, size: int = 6) -> dict:
    members = [f"{tag.lower()}-{i}" for i in range(1, size + 1)]
    return {
        "name": f"Team {tag}",
        "tag": tag,
        "captain_user_id": members[0],
        "roster": [{"user_id": uid, "role": "captain" if i == 0 else "member"} for i, uid in enumerate(members)],
    }


def register(client, tournament_id: int, count: int, seeded: bool = True) -> List[dict]:
    teams = []
    for i in range(1, count + 1):
        payload = roster_payload(f"T{i}")
        if seeded:
            payload["seed"] = i
        response = client.post(f"/api/tournaments/{tournament_id}/teams", json=payload)
        assert response.status_code == 201, response.text
        teams.append(response.json())
    return teams
