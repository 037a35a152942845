"""Health check and settings endpoints."""

from fastapi import APIRouter, Depends, Request

from therabot.config import get_settings, update_settings

from .deps import apply_settings, get_identity, require_admin
from .models import UpdateSettings

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings", dependencies=[Depends(get_identity)])
async def read_settings(request: Request):
    """Get app settings (step cap, publish requirement, transcript visibility)."""
    return get_settings(request.app.state.data_dir)


@router.patch("/settings", dependencies=[Depends(require_admin)])
async def patch_settings(request: Request, body: UpdateSettings):
    """Update app settings (partial merge) and apply them immediately."""
    settings = update_settings(request.app.state.data_dir, body.model_dump(exclude_none=True))
    apply_settings(request.app.state, settings)
    return settings
