# services/tool-provider-service/tool_provider/api/routers/health_routes.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from tool_provider.config import settings
from tool_provider.mcp_host import current_provider_cache, get_provider_cache
from tool_provider.mcp_host.coordinator import detached_cleanup_count

logger = logging.getLogger("tool_provider.api.health")

router = APIRouter(tags=["meta"])


@router.get("/health", summary="Liveness probe")
def health() -> Dict[str, Any]:
    """
    Liveness probe: process is up and app is constructed.
    """
    return {
        "status": "ok",
        "service": settings.service_name,
        "at": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready", summary="Readiness probe")
def ready() -> Dict[str, Any]:
    """
    Readiness probe: the provider cache is operational.
    """
    cache = current_provider_cache()
    if cache is None or cache.is_shut_down:
        raise HTTPException(status_code=503, detail="provider cache is not running")
    return {
        "status": "ready",
        "service": settings.service_name,
        "provider_cache_enabled": settings.provider_cache_enabled,
        "at": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/version", summary="Service version")
def version() -> Dict[str, Any]:
    return {
        "service": settings.service_name,
        "version": settings.service_version,
    }


@router.get("/cache/stats", summary="Provider cache statistics")
def cache_stats() -> Dict[str, Any]:
    stats = get_provider_cache().get_stats()
    return {**stats, "detached_cleanups": detached_cleanup_count()}
