"""
Calibrator — duration-estimate correction factors derived from the archive.

    multiplier = mean(actual / estimated)        over the last N samples
    accuracy   = 1 - mean(|actual - estimated| / actual)

Samples are archived runs of the loop that carry an estimate and whose
outcome is included (completed runs by default). With no samples the
multiplier is 1.0 (no correction) and the accuracy 0.0.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from statistics import fmean, pstdev
from typing import Any

from .archive import CalibrationRecord, RunArchive

TREND_THRESHOLD = 0.1


@dataclass(frozen=True)
class CalibratedEstimate:
    original: float
    calibrated: float
    low: float
    high: float
    multiplier: float
    confidence: float
    samples: int


class Calibrator:
    def __init__(
        self,
        archive: RunArchive,
        window: int = 10,
        include_outcomes: Iterable[str] | None = ("completed",),
    ):
        """Initialise the calibrator.

        Args:
            archive: Source of CalibrationRecords.
            window: Number of most recent samples considered.
            include_outcomes: Outcomes counted as samples. None counts every
                terminal outcome.
        """
        if window < 1:
            raise ValueError("window must be >= 1")
        self.archive = archive
        self.window = window
        self.include_outcomes = frozenset(include_outcomes) if include_outcomes is not None else None

    def samples(self, loop_id: str, window: int | None = None) -> list[CalibrationRecord]:
        usable = [
            r for r in self.archive.records(loop_id)
            if r.ratio is not None
            and r.actual_duration > 0
            and (self.include_outcomes is None or r.outcome in self.include_outcomes)
        ]
        return usable[-(window or self.window):]

    def multiplier(self, loop_id: str) -> float:
        samples = self.samples(loop_id)
        if not samples:
            return 1.0
        return fmean(r.ratio for r in samples)

    def accuracy(self, loop_id: str) -> float:
        """1 = estimates match actuals; floored at 0.0."""
        samples = self.samples(loop_id)
        if not samples:
            return 0.0
        error = fmean(
            abs(r.actual_duration - r.estimated_duration) / r.actual_duration for r in samples
        )
        return max(0.0, 1.0 - error)

    def variance(self, loop_id: str) -> float:
        """Spread of the actual/estimated ratio (std dev, capped at 1.0).

        Fewer than three samples is treated as high uncertainty (0.5).
        """
        samples = self.samples(loop_id)
        if len(samples) < 3:
            return 0.5
        return min(pstdev([r.ratio for r in samples]), 1.0)

    def confidence(self, loop_id: str) -> float:
        count = len(self.samples(loop_id))
        if count == 0:
            return 0.1
        if count < 5:
            return 0.3
        if count < 10:
            return 0.5
        if count < 20:
            return 0.7
        return 0.9

    def calibrated_estimate(self, loop_id: str, estimate: float) -> CalibratedEstimate:
        """Apply the multiplier to ``estimate`` with a variance-based range."""
        multiplier = self.multiplier(loop_id)
        calibrated = estimate * multiplier
        spread = 1 + self.variance(loop_id)
        return CalibratedEstimate(
            original=estimate,
            calibrated=calibrated,
            low=calibrated / spread,
            high=calibrated * spread,
            multiplier=multiplier,
            confidence=self.confidence(loop_id),
            samples=len(self.samples(loop_id)),
        )

    def trend(self, loop_id: str) -> dict[str, str]:
        """Compare the error of the last five samples with the five before."""
        recent_ten = self.samples(loop_id, window=10)
        if len(recent_ten) < 5:
            return {"direction": "stable", "message": "Insufficient data for trend analysis"}
        recent, older = recent_ten[-5:], recent_ten[:-5]
        if not older:
            return {"direction": "stable", "message": "Building baseline calibration data"}

        multiplier = self.multiplier(loop_id)
        improvement = _mean_error(older, multiplier) - _mean_error(recent, multiplier)
        if improvement > TREND_THRESHOLD:
            return {
                "direction": "improving",
                "message": f"Estimation accuracy improving ({round(improvement * 100)}% better)",
            }
        if improvement < -TREND_THRESHOLD:
            return {
                "direction": "worsening",
                "message": f"Estimation accuracy declining ({round(-improvement * 100)}% worse)",
            }
        return {"direction": "stable", "message": "Estimation accuracy stable"}

    def report(self, loop_id: str) -> dict[str, Any]:
        samples = self.samples(loop_id)
        return {
            "loop_id": loop_id,
            "samples": len(samples),
            "multiplier": self.multiplier(loop_id),
            "accuracy": self.accuracy(loop_id),
            "variance": self.variance(loop_id),
            "confidence": self.confidence(loop_id),
            "trend": self.trend(loop_id),
            "recent": [r.to_dict() for r in samples],
        }


def _mean_error(records: list[CalibrationRecord], multiplier: float) -> float:
    return fmean(
        abs(r.estimated_duration * multiplier - r.actual_duration) / r.actual_duration
        for r in records
    )
