import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import OperationalError

from .database import init_db
from .errors import OutingError
from .routes import outing_error_handler, router, store_error_handler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover
    init_db()
    logger.info("Outing registration service ready")
    yield


def create_app() -> FastAPI:
    """Application factory for the outing registration service."""
    app = FastAPI(title="Outing Registration", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(OutingError, outing_error_handler)
    app.add_exception_handler(OperationalError, store_error_handler)
    return app


app = create_app()
