"""Tests for Settings and logging setup."""

import logging
from unittest.mock import patch

import pytest

from chatloop.config import Settings, configure_logging


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("COHERE_API_KEY", raising=False)
    for name in ("CHATLOOP_MODEL", "CHATLOOP_WIRE_FORMAT", "CHATLOOP_MAX_TOOL_ROUNDS"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    """Defaults target the v2 chat endpoint with a bounded tool loop."""
    s = Settings(_env_file=None)
    assert s.api_key == ""
    assert s.api_url == "https://api.cohere.com/v2/chat"
    assert s.wire_format == "v2"
    assert s.temperature is None
    assert s.max_tool_rounds == 8
    assert s.idle_read_timeout == 60.0


def test_api_key_from_unprefixed_env(monkeypatch):
    monkeypatch.setenv("COHERE_API_KEY", "from-env")
    assert Settings(_env_file=None).api_key == "from-env"


def test_prefixed_env_vars(monkeypatch):
    monkeypatch.setenv("CHATLOOP_MODEL", "command-r-plus")
    monkeypatch.setenv("CHATLOOP_WIRE_FORMAT", "v1")
    monkeypatch.setenv("CHATLOOP_MAX_TOOL_ROUNDS", "2")
    s = Settings(_env_file=None)
    assert s.model == "command-r-plus"
    assert s.wire_format == "v1"
    assert s.max_tool_rounds == 2


def test_wire_format_literal_validation():
    """Unknown wire formats rejected by Literal type."""
    with pytest.raises(Exception):
        Settings(COHERE_API_KEY="k", wire_format="v3")


def test_negative_tool_rounds_rejected():
    with pytest.raises(ValueError):
        Settings(COHERE_API_KEY="k", max_tool_rounds=-1)


def test_zero_tool_rounds_allowed():
    """0 means any tool request fails the exchange."""
    assert Settings(COHERE_API_KEY="k", max_tool_rounds=0).max_tool_rounds == 0


def test_idle_timeout_must_be_positive():
    with pytest.raises(ValueError, match="idle_read_timeout must be > 0"):
        Settings(COHERE_API_KEY="k", idle_read_timeout=0)


def test_idle_timeout_bounded_by_read_timeout():
    with pytest.raises(ValueError, match="idle_read_timeout.*must be <= api_timeout_read"):
        Settings(COHERE_API_KEY="k", idle_read_timeout=300, api_timeout_read=120)


@pytest.mark.parametrize("level, expected", [("debug", logging.DEBUG), ("WARNING", logging.WARNING), ("bogus", logging.INFO)])
def test_configure_logging_level(level, expected):
    with patch("chatloop.config.logging.basicConfig") as basic_config:
        configure_logging(Settings(COHERE_API_KEY="k", log_level=level))

    kwargs = basic_config.call_args.kwargs
    assert kwargs["level"] == expected
    assert "%(name)s" in kwargs["format"]
