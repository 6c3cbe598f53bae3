"""Read-only drift detection."""

from converge_engine.drift.detector import DriftDetector

__all__ = ["DriftDetector"]
