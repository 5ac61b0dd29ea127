"""Tests for logging setup and timing helpers."""

import logging
import os
import time
from unittest.mock import patch

from zen_context.core.debug import (
    LOGGER_NAME,
    Verbosity,
    get_verbosity,
    is_verbose,
    setup_logging,
    timer,
)


class TestVerbosityLevels:
    """Tests for Verbosity enum."""

    def test_verbosity_ordering(self):
        """Verbosity levels are ordered correctly."""
        assert Verbosity.QUIET < Verbosity.NORMAL < Verbosity.VERBOSE < Verbosity.DEBUG


class TestGetVerbosity:
    """Tests for get_verbosity function."""

    def test_default_is_normal(self):
        with patch.dict(os.environ, {}, clear=True):
            assert get_verbosity() == Verbosity.NORMAL

    def test_debug_env_var(self):
        """ZEN_DEBUG=true sets DEBUG verbosity."""
        with patch.dict(os.environ, {"ZEN_DEBUG": "true"}, clear=True):
            assert get_verbosity() == Verbosity.DEBUG

    def test_verbose_env_var(self):
        with patch.dict(os.environ, {"ZEN_VERBOSE": "1"}, clear=True):
            assert get_verbosity() == Verbosity.VERBOSE
            assert is_verbose() is True

    def test_quiet_env_var(self):
        with patch.dict(os.environ, {"ZEN_QUIET": "yes"}, clear=True):
            assert get_verbosity() == Verbosity.QUIET
            assert is_verbose() is False

    def test_debug_wins_over_quiet(self):
        with patch.dict(os.environ, {"ZEN_DEBUG": "1", "ZEN_QUIET": "1"}, clear=True):
            assert get_verbosity() == Verbosity.DEBUG


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_level_from_verbosity(self):
        assert setup_logging(verbosity=Verbosity.QUIET).level == logging.ERROR
        assert setup_logging(verbosity=Verbosity.NORMAL).level == logging.WARNING
        assert setup_logging(verbosity=Verbosity.VERBOSE).level == logging.DEBUG

    def test_explicit_level(self):
        assert setup_logging(level=logging.INFO).level == logging.INFO

    def test_single_handler_on_package_logger(self):
        setup_logging(verbosity=Verbosity.NORMAL)
        logger = setup_logging(verbosity=Verbosity.NORMAL)
        assert logger.name == LOGGER_NAME
        assert len(logger.handlers) == 1


class TestTimer:
    """Tests for timer context manager."""

    def test_tracks_elapsed_time(self):
        with timer("test", log=False) as t:
            time.sleep(0.01)

        assert t["elapsed"] >= 0.01
        assert t["start"] < t["end"]

    def test_records_time_on_error(self):
        try:
            with timer("failing", log=False) as t:
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert t["elapsed"] >= 0

    def test_logs_at_debug(self, caplog):
        setup_logging(verbosity=Verbosity.VERBOSE)
        with caplog.at_level(logging.DEBUG, logger=LOGGER_NAME):
            with timer("scan"):
                pass
        assert any("scan took" in r.getMessage() for r in caplog.records)
