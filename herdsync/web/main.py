"""HerdSync JSON API - FastAPI application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..database import Database
from ..errors import (
    HerdSyncError, NotFoundError, ReferencedEntityError, NoEligibleAnimalsError,
    InvalidTransitionError
)
from ..validators import ValidationError
from . import config
from .dependencies import get_database
from .routers import protocols, instances, batches

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (NotFoundError, 404),
    (ValidationError, 400),
    (ReferencedEntityError, 409),
    (NoEligibleAnimalsError, 409),
    (InvalidTransitionError, 409),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    db = get_database()
    db.init_db()
    yield


async def herdsync_error_handler(request: Request, exc: HerdSyncError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    logger.info("%s %s refused: %s", request.method, request.url.path, exc)
    body = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, NoEligibleAnimalsError):
        body["skipped"] = exc.skipped
    return JSONResponse(status_code=status, content=body)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="HerdSync API",
        description="Reproduction protocol tracking",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_exception_handler(HerdSyncError, herdsync_error_handler)

    app.include_router(protocols.router)
    app.include_router(instances.router)
    app.include_router(batches.router)

    @app.get("/")
    def index(db: Database = Depends(get_database)):
        return db.get_stats()

    return app


app = create_app()


def run_server():
    """Entry point for `herdsync-web` command."""
    import argparse
    parser = argparse.ArgumentParser(description="HerdSync JSON API")
    parser.add_argument("--host", default=config.HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=config.PORT, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on changes")
    args = parser.parse_args()

    uvicorn.run(
        "herdsync.web.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    run_server()
