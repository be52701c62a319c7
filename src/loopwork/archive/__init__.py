"""
Run archive and estimate calibration.
"""

from .archive import CalibrationRecord, RunArchive
from .calibrator import CalibratedEstimate, Calibrator

__all__ = [
    "CalibratedEstimate",
    "CalibrationRecord",
    "Calibrator",
    "RunArchive",
]
