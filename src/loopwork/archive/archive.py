"""
Run Archive — immutable record of every run that reached a terminal state.

Layout (when a root is configured)::

    <root>/<YYYY-MM>/<loop_id>-<run_id>.json   full run: invocations, gates, logs
    <root>/calibration.jsonl                   one CalibrationRecord per line

Archiving is idempotent: archiving the same run twice returns the first
record and writes nothing.
"""

import json
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from ..engine.state import Run

logger = structlog.get_logger()

CALIBRATION_FILE = "calibration.jsonl"


@dataclass(frozen=True)
class CalibrationRecord:
    run_id: str
    loop_id: str
    estimated_duration: float | None
    actual_duration: float
    outcome: str
    completed_at: float
    project: str = ""
    loop_version: str = ""

    @property
    def ratio(self) -> float | None:
        """actual / estimated, or None when there is no usable estimate."""
        if not self.estimated_duration or self.estimated_duration <= 0:
            return None
        return self.actual_duration / self.estimated_duration

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalibrationRecord":
        valid_fields = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in valid_fields})


def archive_path(root: Path, record: CalibrationRecord) -> Path:
    month = time.strftime("%Y-%m", time.gmtime(record.completed_at))
    return root / month / f"{record.loop_id}-{record.run_id}.json"


class RunArchive:
    """Stores terminal runs and their calibration records."""

    def __init__(self, root: Path | str | None = None):
        self.root = Path(root) if root else None
        self._records: dict[str, CalibrationRecord] = {}
        # full run data is only held in memory when there is no root to read it back from
        self._runs: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.log = logger.bind(component="run_archive")
        if self.root:
            self._load(self.root)

    def _load(self, root: Path) -> None:
        path = root / CALIBRATION_FILE
        if not path.is_file():
            return
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                record = CalibrationRecord.from_dict(json.loads(line))
            except (json.JSONDecodeError, TypeError) as e:
                self.log.warning("archive.corrupt_line", error=str(e))
                continue
            self._records.setdefault(record.run_id, record)
        self.log.debug("archive.loaded", records=len(self._records))

    # ── writing ──────────────────────────────────────────────────────────

    def archive(self, run: "Run") -> CalibrationRecord:
        """Archive a terminal run.

        Raises:
            ValueError: If the run is not in a terminal state.
        """
        if not run.is_terminal:
            raise ValueError(f"Run '{run.id}' is {run.status.value}; only terminal runs are archived")

        with self._lock:
            existing = self._records.get(run.id)
            if existing is not None:
                return existing

            record = CalibrationRecord(
                run_id=run.id,
                loop_id=run.loop_id,
                estimated_duration=run.estimated_duration,
                actual_duration=run.duration,
                outcome=run.status.value,
                completed_at=run.completed_at or time.time(),
                project=run.project,
                loop_version=run.loop_version,
            )
            data = run.to_dict()
            data["archived_at"] = time.time()

            if self.root:
                path = archive_path(self.root, record)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(
                    json.dumps(data, indent=2, default=str, ensure_ascii=False),
                    encoding="utf-8",
                )
                with (self.root / CALIBRATION_FILE).open("a", encoding="utf-8") as f:
                    f.write(json.dumps(record.to_dict(), default=str) + "\n")
            else:
                self._runs[run.id] = data

            self._records[run.id] = record

        self.log.info(
            "archive.recorded",
            run_id=run.id,
            loop=run.loop_id,
            outcome=record.outcome,
            actual=round(record.actual_duration, 3),
            estimated=record.estimated_duration,
        )
        return record

    # ── reading ──────────────────────────────────────────────────────────

    def records(self, loop_id: str | None = None) -> list[CalibrationRecord]:
        """Calibration records, oldest first."""
        records = (r for r in self._records.values() if loop_id is None or r.loop_id == loop_id)
        return sorted(records, key=lambda r: r.completed_at)

    def query(
        self,
        loop_id: str | None = None,
        project: str | None = None,
        outcome: str | None = None,
        since: float | None = None,
        until: float | None = None,
        limit: int | None = None,
    ) -> list[CalibrationRecord]:
        """Filter archived runs; most recent first."""
        matches = [
            r for r in self.records(loop_id)
            if (project is None or r.project == project)
            and (outcome is None or r.outcome == outcome)
            and (since is None or r.completed_at >= since)
            and (until is None or r.completed_at <= until)
        ]
        matches.reverse()
        return matches[:limit] if limit is not None else matches

    def get(self, run_id: str) -> dict[str, Any] | None:
        """Full archived run data, or None. Read from disk on every call when a root is set."""
        if self.root is None:
            return self._runs.get(run_id)
        record = self._records.get(run_id)
        if record is None:
            return None
        path = archive_path(self.root, record)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            self.log.error("archive.read_error", run_id=run_id, error=str(e))
            return None
        return data

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._records

    def __len__(self) -> int:
        return len(self._records)
