from app.models.map_veto import MapVetoEntry
from app.models.match import BracketSide, Match, MatchState
from app.models.match_dispute import MatchDispute
from app.models.notification_log import NotificationLog
from app.models.team import Team
from app.models.tournament import SideSelectionMethod, Tournament, TournamentFormat, TournamentStatus

__all__ = [
    "Tournament",
    "TournamentFormat",
    "TournamentStatus",
    "SideSelectionMethod",
    "Team",
    "Match",
    "MatchState",
    "BracketSide",
    "MapVetoEntry",
    "MatchDispute",
    "NotificationLog",
]
