"""FastAPI API endpoints under /api.

Endpoint groups: settings/health, conditions, scenarios (metadata, graph
authoring, publish) and sessions (start, advance, outcome, history, stats).
Graph resources are nested under /api/scenarios/{scenario_id}/.
"""

from fastapi import APIRouter

from .conditions import router as conditions_router
from .scenarios import router as scenarios_router
from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(conditions_router)
router.include_router(scenarios_router)
router.include_router(sessions_router)
