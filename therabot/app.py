import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from therabot.authoring import Authoring
from therabot.config import get_settings
from therabot.engine import Engine, RandomSource
from therabot.errors import TherabotError
from therabot.locks import KeyedLocks
from therabot.routes import router
from therabot.routes.deps import apply_settings
from therabot.sessions import SessionService
from therabot.storage import Storage

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None, rng: RandomSource | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    storage = Storage(resolved)

    app = FastAPI(title="Therabot")
    app.state.data_dir = resolved
    app.state.storage = storage
    app.state.engine = Engine(storage, rng=rng)
    app.state.authoring = Authoring(storage, KeyedLocks())
    app.state.sessions = SessionService(storage, app.state.engine, KeyedLocks())
    apply_settings(app.state, get_settings(resolved))

    if os.getenv("THERABOT_DEMO", ""):
        from therabot.demo import create_demo_data
        create_demo_data(storage)

    @app.exception_handler(TherabotError)
    async def therabot_error_handler(_: Request, exc: TherabotError):
        if exc.status_code >= 500:
            logger.error("Internal error: %s", exc, exc_info=exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
