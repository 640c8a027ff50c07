"""Tests for metric_push.log_buffer."""

from __future__ import annotations

import logging

import pytest

from metric_push.log_buffer import RecentLogHandler, install


@pytest.fixture
def logger():
    log = logging.getLogger("metric_push.test_log_buffer")
    log.setLevel(logging.INFO)
    yield log
    for handler in list(log.handlers):
        log.removeHandler(handler)


class TestRecentLogHandler:
    def test_keeps_newest(self, logger):
        handler = RecentLogHandler(capacity=2)
        logger.addHandler(handler)
        for n in range(3):
            logger.info("line %d", n)

        lines = handler.records()
        assert len(lines) == 2
        assert lines[0].endswith("line 1")
        assert lines[1].endswith("line 2")
        assert "[metric_push.test_log_buffer] INFO:" in lines[1]

    def test_limit_and_clear(self, logger):
        handler = RecentLogHandler()
        logger.addHandler(handler)
        logger.info("a")
        logger.warning("b")

        assert [line.split(": ")[-1] for line in handler.records(limit=1)] == ["b"]
        handler.clear()
        assert handler.records() == []


class TestInstall:
    def test_attaches_to_named_logger(self):
        handler = install(capacity=10, logger_name="metric_push.test_install")
        target = logging.getLogger("metric_push.test_install")
        try:
            assert handler in target.handlers
            target.warning("stored")
            assert handler.records()[-1].endswith("stored")
        finally:
            target.removeHandler(handler)
