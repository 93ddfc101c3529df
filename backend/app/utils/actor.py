"""
Acting identity.

Authentication is handled upstream; by the time a request reaches the engine
the caller's identity arrives as headers set by the auth layer. Every engine
operation takes the resulting Actor as an explicit argument.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Actor:
    user_id: str
    is_admin: bool = False


def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    """FastAPI dependency: X-User-Id (required) and X-User-Role ("admin" for elevated calls)."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return Actor(user_id=x_user_id.strip(), is_admin=(x_user_role or "").strip().lower() == ADMIN_ROLE)
