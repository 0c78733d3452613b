"""FastAPI application entrypoint."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .crypto import InvalidKeyError, get_secret_box
from .database import init_db
from .routers import google

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to serve with a missing or malformed vault key.
    try:
        get_secret_box()
    except InvalidKeyError as e:
        logger.critical(f"Cannot start API: {e}")
        raise
    init_db()
    yield


app = FastAPI(
    title="Gmail Job Sync API",
    description="Link Gmail and import job application events in the background",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(google.router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
