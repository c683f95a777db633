"""Logging setup driven by the `logging:` config section.

Modules log through `logging.getLogger(__name__)`; this only decides the
handler/format on the package root logger.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from llama_core.config.schemas.observability import LoggingConfig

_ROOT = "llama_core"
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "ts": record.created,
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(cfg: LoggingConfig | None = None) -> logging.Logger:
    """Install a single stream handler on the package logger (idempotent)."""
    cfg = cfg or LoggingConfig()
    root = logging.getLogger(_ROOT)
    root.setLevel(_LEVELS[cfg.level])
    for h in list(root.handlers):
        if getattr(h, "_llama_core_handler", False):
            root.removeHandler(h)
    handler = logging.StreamHandler()
    handler._llama_core_handler = True  # type: ignore[attr-defined]
    if cfg.format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    root.addHandler(handler)
    return root


__all__ = ["configure_logging", "JsonFormatter"]
