# Force SQLModel table registration at test discovery time
# This ensures all models are registered before any test database creation
from app.models.map_veto import MapVetoEntry  # noqa: F401
from app.models.match import Match  # noqa: F401
from app.models.match_dispute import MatchDispute  # noqa: F401
from app.models.notification_log import NotificationLog  # noqa: F401
from app.models.team import Team  # noqa: F401
from app.models.tournament import Tournament  # noqa: F401
