from __future__ import annotations

import logging
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

APP_LOGGER = "deckview"


def _decode_path(value: str) -> str:
    try:
        return unquote(value, encoding="utf-8", errors="replace")
    except Exception:
        return value


class Utf8AccessFormatter(UvicornAccessFormatter):
    """Access log formatter that prints decoded paths (presentation and slide names)."""

    def formatMessage(self, record):  # type: ignore[override]
        try:
            client_addr, method, full_path, http_version, status_code = record.args
        except Exception:
            return super().formatMessage(record)
        decoded_path = _decode_path(full_path) if isinstance(full_path, str) else full_path
        new_record = copy(record)
        new_record.args = (client_addr, method, decoded_path, http_version, status_code)
        return super().formatMessage(new_record)


def build_uvicorn_log_config(debug: bool = False) -> dict[str, Any]:
    """Return a uvicorn logging config with decoded access paths and the app logger attached."""
    config = deepcopy(LOGGING_CONFIG)
    formatter = config.get("formatters", {}).get("access")
    if isinstance(formatter, dict):
        formatter["()"] = "deckview.logging_utils.Utf8AccessFormatter"
    config.setdefault("loggers", {})[APP_LOGGER] = {
        "handlers": ["default"],
        "level": "DEBUG" if debug else "INFO",
        "propagate": False,
    }
    return config


def configure_logging(debug: bool = False) -> None:
    """Set up logging for commands that run without uvicorn."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger(APP_LOGGER).setLevel(level)


__all__ = ["Utf8AccessFormatter", "build_uvicorn_log_config", "configure_logging"]
