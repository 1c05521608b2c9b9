"""Tests for logging_utils module."""

from __future__ import annotations

from loguru import logger

from flux_board.logging_utils import configure_logging, truncate


class TestTruncate:
    def test_none_passes_through(self):
        assert truncate(None, 10) is None

    def test_short_text_unchanged(self):
        assert truncate("hello", 10) == "hello"

    def test_long_text_is_marked(self):
        result = truncate("x" * 25, 10)
        assert result == "x" * 10 + "...[truncated]"


def test_configure_logging_replaces_sinks(capsys):
    configure_logging("warning")
    logger.info("hidden message")
    logger.warning("visible message")
    err = capsys.readouterr().err
    assert "visible message" in err
    assert "hidden message" not in err
