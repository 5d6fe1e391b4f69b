"""FastAPI application entrypoint — read-only status API.

Exposes run history, checkpoints and tenant reachability. There are no
provisioning or migration endpoints; those stay with the CLI and workers.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tenancy.api.v1 import v1_router
from tenancy.core.config import get_settings
from tenancy.core.database import create_engine_for

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: master engine for the lifetime of the app
    settings = get_settings()
    app.state.engine = create_engine_for(settings.database_url)
    yield
    await app.state.engine.dispose()


app = FastAPI(
    title="Tenancy status",
    version="0.1.0",
    description="Status of per-shop database provisioning, migration and validation",
    lifespan=lifespan,
)

# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
