"""Logging setup for the host agent.

Two formats are supported, selected by ``settings.log_format``:

- ``json``: one JSON object per line, suitable for log shipping
- ``text``: a compact human-readable line for interactive debugging
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from vmhost.config import settings

# Attributes present on every LogRecord; anything else was passed via extra=
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _record_extra(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class AgentJSONFormatter(logging.Formatter):
    """Format records as single-line JSON documents."""

    def __init__(self, agent_id: str = ""):
        super().__init__()
        self.agent_id = agent_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "vmhost",
            "agent_id": self.agent_id,
        }
        extra = _record_extra(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class AgentTextFormatter(logging.Formatter):
    """Human-readable formatter with a short agent id prefix."""

    def __init__(self, agent_id: str = ""):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(agent)s] %(name)s: %(message)s",
        )
        self.agent_id = agent_id

    def format(self, record: logging.LogRecord) -> str:
        record.agent = self.agent_id[:8] if self.agent_id else "-"
        return super().format(record)


def setup_agent_logging(agent_id: str = "") -> None:
    """Install a single stream handler on the root logger."""
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)

    if settings.log_format == "text":
        formatter: logging.Formatter = AgentTextFormatter(agent_id)
    else:
        formatter = AgentJSONFormatter(agent_id)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
