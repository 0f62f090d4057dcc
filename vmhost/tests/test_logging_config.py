"""Tests for agent log formatting."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from vmhost.config import settings
from vmhost.logging_config import AgentJSONFormatter, AgentTextFormatter, setup_agent_logging


def make_record(message="Started workload web01", **extra):
    record = logging.LogRecord("vmhost.lifecycle", logging.INFO, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_format():
    payload = json.loads(AgentJSONFormatter("a1b2c3d4").format(make_record(workload="web01")))
    assert payload["level"] == "INFO"
    assert payload["logger"] == "vmhost.lifecycle"
    assert payload["message"] == "Started workload web01"
    assert payload["service"] == "vmhost"
    assert payload["agent_id"] == "a1b2c3d4"
    assert payload["extra"] == {"workload": "web01"}


def test_json_format_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    payload = json.loads(AgentJSONFormatter().format(record))
    assert "RuntimeError: boom" in payload["exception"]
    assert "extra" not in payload


def test_text_format_truncates_agent_id():
    line = AgentTextFormatter("0123456789abcdef").format(make_record())
    assert "[01234567] vmhost.lifecycle: Started workload web01" in line


def test_setup_replaces_handlers(monkeypatch, restore_root_logger):
    monkeypatch.setattr(settings, "log_format", "text")
    monkeypatch.setattr(settings, "log_level", "debug")
    setup_agent_logging("agent")
    setup_agent_logging("agent")

    root = restore_root_logger
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, AgentTextFormatter)
    assert root.level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
