"""Tests for package logging setup."""

import logging

from santa_claude import configure_logging


class TestConfigureLogging:
    def test_sets_level_and_single_handler(self):
        logger = configure_logging("DEBUG")
        configure_logging("INFO")

        assert logger is logging.getLogger("santa_claude")
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert logger.handlers[0].level == logging.INFO

    def test_unknown_level_falls_back_to_warning(self):
        assert configure_logging("chatty").level == logging.WARNING

