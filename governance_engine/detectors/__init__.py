"""
Detectors Package.

Exports the privilege drift, overprivileged account and SoD detectors.
"""

from .drift import PrivilegeDriftDetector, compute_drift
from .overprivileged import OverprivilegedAccountDetector
from .sod import SoDEvaluator

__all__ = [
    "OverprivilegedAccountDetector",
    "PrivilegeDriftDetector",
    "SoDEvaluator",
    "compute_drift",
]
