"""
Tests for the Run Archive and the Calibrator.

Covers:
- RunArchive.archive: terminal runs only, idempotent, file layout
- Reload of calibration records from disk; get() reads archived runs back
- query: loop, project, outcome, time window, limit
- Calibrator: multiplier, accuracy (floored at 0), variance, confidence,
  calibrated_estimate range, trend, report
"""

import json
from pathlib import Path

import pytest

from loopwork.archive import Calibrator, CalibrationRecord, RunArchive
from loopwork.engine.state import Run, RunStatus

BASE = 1_700_000_000.0


def _run(
    run_id: str,
    actual: float,
    estimated: float | None = 100.0,
    status: RunStatus = RunStatus.COMPLETED,
    loop_id: str = "deal-loop",
    project: str = "acme",
    offset: float = 0.0,
) -> Run:
    started = BASE + offset
    return Run(
        id=run_id,
        loop_id=loop_id,
        loop_version="1.0.0",
        phase_names=["ASSESS"],
        skills_total=1,
        project=project,
        status=status,
        started_at=started,
        completed_at=started + actual,
        estimated_duration=estimated,
    )


def _archive_many(archive: RunArchive, actuals: list[float], estimated: float = 100.0) -> None:
    for i, actual in enumerate(actuals):
        archive.archive(_run(f"run-{i:03d}", actual, estimated, offset=i * 1000))


# ── Tests: archive ────────────────────────────────────────────────────


class TestRunArchive:
    def test_rejects_live_run(self):
        run = _run("run-1", 10, status=RunStatus.ACTIVE)
        with pytest.raises(ValueError, match="terminal"):
            RunArchive().archive(run)

    def test_record_fields(self):
        record = RunArchive().archive(_run("run-1", 150, 100))
        assert record.actual_duration == pytest.approx(150)
        assert record.ratio == pytest.approx(1.5)
        assert record.outcome == "completed"
        assert record.project == "acme"

    def test_idempotent(self, tmp_path: Path):
        archive = RunArchive(tmp_path)
        run = _run("run-1", 10)
        first = archive.archive(run)
        second = archive.archive(run)
        assert first is second
        lines = (tmp_path / "calibration.jsonl").read_text().splitlines()
        assert len(lines) == 1

    def test_layout_and_reload(self, tmp_path: Path):
        archive = RunArchive(tmp_path)
        run = _run("run-1", 10)
        run.log("info", "system", "done")
        record = archive.archive(run)

        files = list(tmp_path.glob("*/deal-loop-run-1.json"))
        assert len(files) == 1
        data = json.loads(files[0].read_text())
        assert data["status"] == "completed"
        assert data["logs"][0]["message"] == "done"

        reloaded = RunArchive(tmp_path)
        assert "run-1" in reloaded
        assert reloaded.records() == [record]
        assert reloaded.get("run-1")["id"] == "run-1"
        assert reloaded.get("missing") is None

    def test_missing_estimate_has_no_ratio(self):
        record = RunArchive().archive(_run("run-1", 10, estimated=None))
        assert record.ratio is None

    def test_query_filters(self):
        archive = RunArchive()
        archive.archive(_run("a", 10, offset=0))
        archive.archive(_run("b", 10, offset=100, status=RunStatus.FAILED))
        archive.archive(_run("c", 10, offset=200, project="globex"))
        archive.archive(_run("d", 10, offset=300, loop_id="other-loop"))

        assert [r.run_id for r in archive.query()] == ["d", "c", "b", "a"]
        assert [r.run_id for r in archive.query(loop_id="deal-loop")] == ["c", "b", "a"]
        assert [r.run_id for r in archive.query(project="globex")] == ["c"]
        assert [r.run_id for r in archive.query(outcome="failed")] == ["b"]
        assert [r.run_id for r in archive.query(since=BASE + 150)] == ["d", "c"]
        assert [r.run_id for r in archive.query(until=BASE + 150)] == ["b", "a"]
        assert [r.run_id for r in archive.query(limit=1)] == ["d"]
        assert len(archive) == 4

    def test_record_roundtrip_ignores_unknown_fields(self):
        record = CalibrationRecord("r", "l", 10.0, 12.0, "completed", BASE)
        data = record.to_dict() | {"extra": 1}
        assert CalibrationRecord.from_dict(data) == record


# ── Tests: calibrator ─────────────────────────────────────────────────


class TestCalibrator:
    def test_no_samples(self):
        calibrator = Calibrator(RunArchive())
        assert calibrator.multiplier("deal-loop") == 1.0
        assert calibrator.accuracy("deal-loop") == 0.0
        assert calibrator.confidence("deal-loop") == 0.1

    def test_multiplier_and_accuracy(self):
        archive = RunArchive()
        _archive_many(archive, [150, 150])
        calibrator = Calibrator(archive)
        assert calibrator.multiplier("deal-loop") == pytest.approx(1.5)
        # |150-100|/150 = 1/3
        assert calibrator.accuracy("deal-loop") == pytest.approx(2 / 3)

    def test_accuracy_floored_at_zero(self):
        archive = RunArchive()
        _archive_many(archive, [10], estimated=100)
        assert Calibrator(archive).accuracy("deal-loop") == 0.0

    def test_window_uses_most_recent(self):
        archive = RunArchive()
        _archive_many(archive, [300, 300, 100, 100])
        calibrator = Calibrator(archive, window=2)
        assert calibrator.multiplier("deal-loop") == pytest.approx(1.0)

    def test_failed_runs_excluded_by_default(self):
        archive = RunArchive()
        archive.archive(_run("ok", 100))
        archive.archive(_run("bad", 500, status=RunStatus.FAILED, offset=10))
        assert Calibrator(archive).multiplier("deal-loop") == pytest.approx(1.0)
        assert Calibrator(archive, include_outcomes=None).multiplier("deal-loop") == pytest.approx(3.0)

    def test_runs_without_estimate_ignored(self):
        archive = RunArchive()
        archive.archive(_run("no-estimate", 100, estimated=None))
        assert Calibrator(archive).samples("deal-loop") == []

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            Calibrator(RunArchive(), window=0)

    def test_confidence_grows_with_samples(self):
        archive = RunArchive()
        _archive_many(archive, [100] * 12)
        assert Calibrator(archive, window=4).confidence("deal-loop") == 0.3
        assert Calibrator(archive, window=6).confidence("deal-loop") == 0.5
        assert Calibrator(archive, window=12).confidence("deal-loop") == 0.7

    def test_calibrated_estimate(self):
        archive = RunArchive()
        _archive_many(archive, [200, 200, 200])
        estimate = Calibrator(archive).calibrated_estimate("deal-loop", 60)
        assert estimate.multiplier == pytest.approx(2.0)
        assert estimate.calibrated == pytest.approx(120)
        # zero spread with identical samples
        assert estimate.low == pytest.approx(120)
        assert estimate.high == pytest.approx(120)
        assert estimate.samples == 3

    def test_few_samples_widen_range(self):
        archive = RunArchive()
        _archive_many(archive, [100])
        estimate = Calibrator(archive).calibrated_estimate("deal-loop", 100)
        assert estimate.low == pytest.approx(100 / 1.5)
        assert estimate.high == pytest.approx(150)

    def test_trend_insufficient(self):
        archive = RunArchive()
        _archive_many(archive, [100, 100])
        assert Calibrator(archive).trend("deal-loop")["direction"] == "stable"

    def test_trend_improving(self):
        archive = RunArchive()
        _archive_many(archive, [300, 20, 300, 20, 300, 100, 100, 100, 100, 100])
        assert Calibrator(archive).trend("deal-loop")["direction"] == "improving"

    def test_trend_worsening(self):
        archive = RunArchive()
        _archive_many(archive, [100, 100, 100, 100, 100, 300, 20, 300, 20, 300])
        assert Calibrator(archive).trend("deal-loop")["direction"] == "worsening"

    def test_report(self):
        archive = RunArchive()
        _archive_many(archive, [120, 80, 100])
        report = Calibrator(archive).report("deal-loop")
        assert report["samples"] == 3
        assert report["multiplier"] == pytest.approx(1.0)
        assert len(report["recent"]) == 3
        assert report["trend"]["direction"] == "stable"
