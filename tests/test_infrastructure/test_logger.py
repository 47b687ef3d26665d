"""Tests for logging setup helpers."""

import logging

from kai.infrastructure.logger import LIBRARY_LOGGERS, logger, parse_level, quiet_library_loggers


class TestParseLevel:
    def test_known_levels(self):
        assert parse_level("debug") == logging.DEBUG
        assert parse_level(" WARNING ") == logging.WARNING

    def test_unknown_or_missing_falls_back_to_info(self):
        assert parse_level("chatty") == logging.INFO
        assert parse_level(None) == logging.INFO


class TestLibraryLoggers:
    def test_quieted_to_warning(self):
        quiet_library_loggers(logging.DEBUG)
        assert all(logging.getLogger(name).level == logging.WARNING for name in LIBRARY_LOGGERS)

    def test_follow_stricter_level(self):
        quiet_library_loggers(logging.ERROR)
        assert logging.getLogger("docker").level == logging.ERROR
        quiet_library_loggers(logging.INFO)


def test_logger_accepts_key_values():
    logger.info("Runtime selected", runtime="docker")
