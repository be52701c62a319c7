"""
Tests for the logging pipelines.

Covers:
- HumanFormatter: one readable line per run/phase/skill/gate event
- HumanLog: helpers emit HUMAN-level event dicts
- HumanLogHandler: formats HUMAN records only
- configure_logging: handlers per pipeline, JSON file output
"""

import io
import json
import logging
from unittest.mock import MagicMock

import pytest
import structlog

from loopwork.config import LoggingConfig
from loopwork.logging import HUMAN, HumanFormatter, HumanLog, HumanLogHandler, configure_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logging.root.handlers.clear()
    structlog.reset_defaults()


# ── Tests: formatter ──────────────────────────────────────────────────


class TestHumanFormatter:
    def test_run_started_banner(self):
        line = HumanFormatter().format_event("run.started", run_id="run-1", loop="deal-loop", version="1.0.0")
        assert "run-1" in line
        assert "deal-loop@1.0.0" in line

    def test_phase_entered_is_one_based(self):
        line = HumanFormatter().format_event("phase.entered", phase="ASSESS", index=0, total=3)
        assert line == "▸ Phase ASSESS (1/3)"

    def test_skill_events(self):
        fmt = HumanFormatter()
        assert fmt.format_event("skill.completed", skill="scoring") == "  skill scoring → OK"
        retry = fmt.format_event("skill.retrying", skill="scoring", attempt=2, max_attempts=3)
        assert "retry 2/3" in retry
        assert "FAILED: boom" in fmt.format_event("skill.exhausted", skill="scoring", error="boom")

    def test_gate_result(self):
        fmt = HumanFormatter()
        assert fmt.format_event("gate.result", gate="g", result="pass", reason=None) == "  gate g → PASS"
        failed = fmt.format_event("gate.result", gate="g", result="fail", reason="too low", blocking=False)
        assert failed == "  gate g → FAIL (advisory): too low"

    def test_blocked_with_detail(self):
        line = HumanFormatter().format_event(
            "run.blocked", phase="ASSESS", reason="gate_failed", detail="criteria not met",
        )
        assert line == "⏸ Blocked at ASSESS: gate_failed (criteria not met)"

    def test_completed_duration(self):
        assert "2.5s" in HumanFormatter().format_event("run.completed", phases=2, duration=2.5)
        assert "1.5m" in HumanFormatter().format_event("run.completed", phases=2, duration=90)

    def test_unknown_event(self):
        assert HumanFormatter().format_event("memory.written") is None


# ── Tests: HumanLog ───────────────────────────────────────────────────


class TestHumanLog:
    def test_phase_entered(self):
        mock_logger = MagicMock()
        HumanLog(mock_logger).phase_entered("run-1", "ASSESS", 0, 2)
        mock_logger.log.assert_called_once_with(
            HUMAN, {"event": "phase.entered", "run_id": "run-1", "phase": "ASSESS", "index": 0, "total": 2},
        )

    def test_gate_awaiting(self):
        mock_logger = MagicMock()
        HumanLog(mock_logger).gate_awaiting("run-1", "review-gate")
        mock_logger.log.assert_called_once_with(
            HUMAN, {"event": "gate.awaiting", "run_id": "run-1", "gate": "review-gate"},
        )


# ── Tests: handler ────────────────────────────────────────────────────


class TestHumanLogHandler:
    def _record(self, level: int, msg) -> logging.LogRecord:
        return logging.LogRecord("loopwork.engine", level, __file__, 1, msg, None, None)

    def test_formats_event_dict(self):
        stream = io.StringIO()
        handler = HumanLogHandler(stream=stream)
        handler.emit(self._record(HUMAN, {"event": "gate.awaiting", "gate": "review-gate", "_private": 1}))
        assert stream.getvalue() == "  gate review-gate → waiting for approval\n"

    def test_ignores_other_levels(self):
        stream = io.StringIO()
        handler = HumanLogHandler(stream=stream)
        handler.emit(self._record(logging.INFO, {"event": "gate.awaiting", "gate": "g"}))
        assert stream.getvalue() == ""

    def test_unknown_event_writes_nothing(self):
        stream = io.StringIO()
        HumanLogHandler(stream=stream).emit(self._record(HUMAN, {"event": "other"}))
        assert stream.getvalue() == ""

    def test_through_stdlib_logger(self):
        stream = io.StringIO()
        logger = logging.getLogger("loopwork.test.human")
        logger.setLevel(logging.DEBUG)
        logger.addHandler(HumanLogHandler(stream=stream))
        try:
            HumanLog(logger).skill_completed("run-1", "scoring")
        finally:
            logger.handlers.clear()
        assert "skill scoring → OK" in stream.getvalue()


# ── Tests: configure_logging ──────────────────────────────────────────


class TestConfigureLogging:
    def test_default_pipelines(self):
        configure_logging(LoggingConfig())
        kinds = [type(h) for h in logging.root.handlers]
        assert HumanLogHandler in kinds
        assert logging.StreamHandler in kinds

    def test_quiet_disables_stderr(self):
        configure_logging(LoggingConfig(), quiet=True)
        assert logging.root.handlers == []

    def test_level_above_human_skips_human_handler(self):
        configure_logging(LoggingConfig(level="warn"))
        assert not any(isinstance(h, HumanLogHandler) for h in logging.root.handlers)

    def test_json_file(self, tmp_path):
        log_file = tmp_path / "logs" / "loopwork.jsonl"
        configure_logging(LoggingConfig(file=log_file), json_output=True)
        structlog.get_logger("loopwork.test").info("catalog.loaded", skills=3)
        for handler in logging.root.handlers:
            handler.flush()

        lines = log_file.read_text().splitlines()
        event = json.loads(lines[-1])
        assert event["event"] == "catalog.loaded"
        assert event["skills"] == 3
        assert event["level"] == "info"
