"""
Runtime configuration.

Values come from the environment (optionally a local .env file) and are read
once at import time. Per-tournament settings (ready timeout, map pool, side
selection) live on the Tournament row and override these defaults.
"""
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tournament.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("true", "1", "yes")

# Ready-up window before the non-ready side forfeits (15 minutes)
READY_UP_TIMEOUT_SECONDS = int(os.getenv("READY_UP_TIMEOUT_SECONDS", "900"))

# Notification relay (Discord bot HTTP service). Unset = dry-run.
DISCORD_RELAY_URL = os.getenv("DISCORD_RELAY_URL", "").rstrip("/")
DISCORD_RELAY_TIMEOUT_SECONDS = float(os.getenv("DISCORD_RELAY_TIMEOUT_SECONDS", "10"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
