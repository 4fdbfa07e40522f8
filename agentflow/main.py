import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router
from .config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    settings = get_settings()
    logger.info(
        "Starting agentflow (sandbox=%s, node timeout=%d ms)",
        settings.sandbox_mode,
        settings.node_timeout_ms,
    )

    yield

    logger.info("Shutting down agentflow")

app = FastAPI(
    title="agentflow",
    description="Runs agent workflow graphs: ordered, sandboxed, cancellable node execution with live status.",
    lifespan=lifespan
)

# The workflow editor runs on localhost during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(api_router)
