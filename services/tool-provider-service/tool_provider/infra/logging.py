# services/tool-provider-service/tool_provider/infra/logging.py
from __future__ import annotations
import logging
from typing import Dict, Mapping, Optional

from tool_provider.config import settings

_LEVELS: dict[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

_SENSITIVE_HEADER_PARTS = ("auth", "cookie", "api-key", "token")


def setup_logging(service_name: str = "tool-provider-service") -> None:
    """
    Minimal, consistent structured-ish logging across services.
    """
    level = _LEVELS.get(settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=(
            "%(asctime)s | %(levelname)s | %(name)s | "
            f"svc={service_name} | %(message)s"
        ),
    )
    # quiet noisy deps if needed
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("mcp").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def redact_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Header map safe to put in a log line."""
    shown: Dict[str, str] = {}
    for k, v in (headers or {}).items():
        if any(part in k.lower() for part in _SENSITIVE_HEADER_PARTS):
            shown[k] = "***"
        else:
            shown[k] = v
    return shown
