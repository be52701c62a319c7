"""
RunStore — run persistence for recovery.

Each run is saved in ``<state_dir>/runs/<run_id>.json`` after every state
transition. ``load_all`` is used by ``ExecutionEngine.recover`` at startup.
"""

import json
import os
from pathlib import Path

import structlog

from .state import Run

logger = structlog.get_logger()


class RunStore:
    """Persists runs as individual JSON files."""

    def __init__(self, state_dir: Path | str):
        self.runs_dir = Path(state_dir) / "runs"

    def _path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def save(self, run: Run) -> None:
        """Write the run atomically (temp file + rename)."""
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(run.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps(run.to_dict(), indent=2, default=str, ensure_ascii=False),
            encoding="utf-8",
        )
        os.replace(tmp, path)
        logger.debug("run.saved", run_id=run.id, status=run.status.value)

    def load(self, run_id: str) -> Run | None:
        """Load a saved run.

        Returns:
            The Run, or None if it does not exist or cannot be decoded.
        """
        path = self._path(run_id)
        if not path.exists():
            return None
        try:
            return Run.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("run.load_error", run_id=run_id, error=str(e))
            return None

    def load_all(self) -> list[Run]:
        """Every decodable saved run, oldest first."""
        if not self.runs_dir.exists():
            return []
        runs = [self.load(path.stem) for path in sorted(self.runs_dir.glob("*.json"))]
        return sorted((r for r in runs if r is not None), key=lambda r: r.started_at)

    def delete(self, run_id: str) -> bool:
        path = self._path(run_id)
        if path.exists():
            path.unlink()
            return True
        return False
