"""Tests for logging context managers."""

import logging
from unittest.mock import MagicMock

import pytest

from core.logging.context import get_log_context, set_log_context
from core.logging.context_managers import (
    LogContext,
    StageLogContext,
    log_phase,
)


@pytest.fixture
def logger():
    """Create a mock logger for testing."""
    return MagicMock(spec=logging.Logger)


class TestLogContext:
    """Tests for LogContext manager."""

    def test_sets_context_on_enter(self):
        with LogContext(cycle_id="c-1", group="main"):
            ctx = get_log_context()
            assert ctx["cycle_id"] == "c-1"
            assert ctx["group"] == "main"

    def test_restores_context_on_exit(self):
        set_log_context(cycle_id="initial", partition="20240101")

        with LogContext(cycle_id="c-1", partition="20240102"):
            pass

        ctx = get_log_context()
        assert ctx["cycle_id"] == "initial"
        assert ctx["partition"] == "20240101"

    def test_handles_none_values(self):
        """None values don't override context."""
        set_log_context(cycle_id="existing")

        with LogContext(group="main"):
            ctx = get_log_context()
            assert ctx["cycle_id"] == "existing"
            assert ctx["group"] == "main"

    def test_nested_contexts(self):
        with LogContext(group="main"):
            with LogContext(partition="20240101"):
                ctx = get_log_context()
                assert ctx["group"] == "main"
                assert ctx["partition"] == "20240101"
            assert get_log_context()["partition"] == ""

    def test_restores_on_exception(self):
        with pytest.raises(RuntimeError):
            with LogContext(group="main"):
                raise RuntimeError("boom")
        assert get_log_context()["group"] == ""


class TestStageLogContext:
    """Tests for StageLogContext manager."""

    def test_sets_stage(self):
        with StageLogContext("merge"):
            assert get_log_context()["stage"] == "merge"
        assert get_log_context()["stage"] == ""

    def test_records_duration(self):
        with StageLogContext("fetch") as ctx:
            ctx.set_result(objects_total=3)
        assert ctx.result_context["objects_total"] == 3
        assert ctx.result_context["duration_ms"] >= 0

    def test_does_not_swallow_exceptions(self):
        with pytest.raises(ValueError):
            with StageLogContext("archive"):
                raise ValueError("x")

    def test_logs_result_on_success(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="core.logging.context_managers"):
            with StageLogContext("merge") as ctx:
                ctx.set_result(lines_in=10, lines_out=7)

        records = [r for r in caplog.records if r.getMessage() == "Stage complete: merge"]
        assert len(records) == 1
        assert records[0].levelno == logging.DEBUG
        assert records[0].lines_out == 7

    def test_no_completion_record_on_error(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="core.logging.context_managers"):
            with pytest.raises(ValueError):
                with StageLogContext("archive"):
                    raise ValueError("x")

        assert not [r for r in caplog.records if r.getMessage().startswith("Stage complete")]


class TestLogPhase:
    def test_logs_duration_and_context(self, logger):
        with log_phase(logger, "list_partitions", bucket="cdn-logs"):
            pass

        logger.log.assert_called_once()
        level, msg = logger.log.call_args[0][:2]
        extra = logger.log.call_args[1]["extra"]
        assert level == logging.DEBUG
        assert msg == "Phase complete: list_partitions"
        assert extra["bucket"] == "cdn-logs"
        assert "duration_ms" in extra

    def test_logs_even_on_error(self, logger):
        with pytest.raises(KeyError):
            with log_phase(logger, "lookup"):
                raise KeyError("x")
        logger.log.assert_called_once()

    def test_accepts_string_level(self, logger):
        with log_phase(logger, "merge", level="info"):
            pass
        assert logger.log.call_args[0][0] == logging.INFO
