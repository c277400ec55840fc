"""
Tests for the console logger
"""

import io

import pytest

from suiguard.core.cli_logger import LOG_MODE_ENV, CLILogger, format_duration, resolve_mode


@pytest.fixture(autouse=True)
def clear_mode(monkeypatch):
    monkeypatch.delenv(LOG_MODE_ENV, raising=False)


def make_logger(**kwargs):
    stream = io.StringIO()
    return CLILogger(component="test", stream=stream, **kwargs), stream


class TestFormatDuration:
    """Test duration formatting."""

    @pytest.mark.parametrize("seconds,expected", [(-1, "0ms"), (0.25, "250ms"), (3.5, "3.50s"), (125, "2m5.00s")])
    def test_values(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestCLILogger:
    """Test line format, filtering and context binding."""

    def test_line_format(self):
        logger, stream = make_logger()
        logger.info("pipeline.done", "分析完成", risk_score=100, skipped=None)
        line = stream.getvalue().strip()
        assert "[INFO] [test] pipeline.done | 分析完成 | risk_score=100" in line
        assert "skipped" not in line

    def test_debug_hidden_unless_debug_mode(self, monkeypatch):
        logger, stream = make_logger(verbose=True)
        logger.debug("x")
        assert stream.getvalue() == ""

        monkeypatch.setenv(LOG_MODE_ENV, "debug")
        logger.debug("x")
        assert "[DEBUG]" in stream.getvalue()

    def test_noisy_events_filtered_by_kind(self):
        logger, stream = make_logger()
        logger.warning("chain.rpc", "retrying", kind="retry")
        assert stream.getvalue() == ""
        logger.error("chain.rpc", "failed", kind="error")
        assert "failed" in stream.getvalue()

    def test_bound_context(self):
        logger, stream = make_logger()
        logger.bind(package_id="0xabc").info("feed.skip_cached", network="mainnet")
        assert "package_id=0xabc, network=mainnet" in stream.getvalue()

    def test_multiline_values_kept_on_one_line(self):
        logger, stream = make_logger()
        logger.error("analyze.failed", "bad\nreply")
        assert stream.getvalue().count("\n") == 1

    def test_resolve_mode(self, monkeypatch):
        assert resolve_mode() == "normal"
        assert resolve_mode(verbose=True) == "verbose"
        monkeypatch.setenv(LOG_MODE_ENV, "DEBUG")
        assert resolve_mode() == "debug"
        assert resolve_mode(mode="normal") == "normal"
