"""
loopwork — phase-gated workflow engine for skill loops.

Subpackages: catalog (skills and dependencies), loops (templates), gates,
engine (runs), memory, archive (calibration) and config/logging.
"""

__version__ = "0.4.0"
