# services/tool-provider-service/tool_provider/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from tool_provider.config import settings
from tool_provider.infra.logging import setup_logging
from tool_provider.mcp_host import get_provider_cache, wait_for_detached_cleanups
from tool_provider.api.routers import health_routes

logger = logging.getLogger("tool_provider.main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    App lifespan:
      - configure logging
      - start the provider cache expiry sweep
      - graceful shutdown: provider cache, then late MCP connection cleanups
    """
    setup_logging(settings.service_name)
    logger.info("%s starting up", settings.service_name)

    cache = get_provider_cache()
    cache.start()
    logger.info("Provider cache ready (enabled=%s)", settings.provider_cache_enabled)

    try:
        yield
    finally:
        # a) Provider cache (disposes every cached bundle)
        try:
            await cache.shutdown()
        except Exception:
            logger.warning("Error shutting down provider cache", exc_info=True)

        # b) Connections that outlived their bundle timeout
        try:
            still_running = await wait_for_detached_cleanups(settings.mcp_dispose_grace_sec)
            if still_running:
                logger.warning("%d MCP cleanup task(s) still running at shutdown", still_running)
        except Exception:
            logger.warning("Error draining MCP cleanup tasks", exc_info=True)

        logger.info("%s shutdown complete", settings.service_name)


app = FastAPI(
    title="Tool Provider Service",
    description="MCP tool provider connections and per-session provider cache",
    version=settings.service_version,
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

app.include_router(health_routes.router)
