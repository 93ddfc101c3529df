import logging
import os
import subprocess
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from app.config import CORS_ORIGINS, LOG_LEVEL
from app.database import engine, init_db
from app.routes import admin, matches, teams, tournaments
from app.services.engine_errors import EngineError
from app.services.match_events import subscribe
from app.services.notification_relay import make_relay_subscriber

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Esports Bracket Engine API")


# Get build info
def get_build_info():
    """Get git commit hash or build timestamp"""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=os.path.dirname(os.path.dirname(__file__)),
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (OSError, subprocess.SubprocessError):
        pass

    # Fallback to build timestamp
    return datetime.now().strftime("%Y%m%d-%H%M%S")


BUILD_HASH = get_build_info()

_cors_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
_cors_origins.extend(CORS_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """Typed engine errors -> {"detail", "code", "match_id"} with the error's status."""
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Include routers
app.include_router(tournaments.router, prefix="/api", tags=["tournaments"])
app.include_router(teams.router, prefix="/api", tags=["teams"])
# Per-match protocol (ready-up, veto, sides, results)
app.include_router(matches.router, prefix="/api", tags=["matches"])
# Admin overrides and repair (router has its own /admin prefix)
app.include_router(admin.router, prefix="/api", tags=["admin"])


@app.on_event("startup")
def on_startup():
    init_db()  # Use centralized init_db() which imports models and creates tables
    subscribe(make_relay_subscriber(lambda: Session(engine)))
    logger.info(f"Esports Bracket Engine API started (build {BUILD_HASH}, {len(app.routes)} routes)")


@app.get("/api/health")
def health_check():
    """Diagnostic endpoint to verify which code is running"""
    return {"app_name": "Esports Bracket Engine API", "build_hash": BUILD_HASH, "status": "healthy"}
