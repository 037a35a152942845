"""Request dependencies: services from app state and the caller's identity.

Authentication happens upstream; the caller's identity arrives as trusted
headers (`X-Trainee-Id`, `X-Admin`).
"""

from typing import Any

from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel

from therabot.authoring import Authoring
from therabot.sessions import SessionService
from therabot.storage import Storage


class Identity(BaseModel):
    trainee_id: str
    is_admin: bool = False


def get_identity(
    x_trainee_id: str | None = Header(default=None),
    x_admin: bool = Header(default=False),
) -> Identity:
    if not x_trainee_id:
        raise HTTPException(401, "Missing trainee identity")
    return Identity(trainee_id=x_trainee_id, is_admin=x_admin)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(403, "Admin access required")
    return identity


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_authoring(request: Request) -> Authoring:
    return request.app.state.authoring


def get_sessions(request: Request) -> SessionService:
    return request.app.state.sessions


def apply_settings(state: Any, settings: dict[str, Any]) -> None:
    """Push persisted settings into the live engine and session service."""
    state.engine.max_auto_steps = settings["max_auto_steps"]
    state.sessions.require_published = settings["require_published"]
    state.sessions.show_observations = settings["show_observations"]
    state.sessions.recent_sessions = settings["recent_sessions"]
