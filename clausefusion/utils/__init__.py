"""
Utility functions and helpers for the fusion engine.
"""

from .routing import ExpertSignature, FusionWeights, RoutingLogits
from .validation import check_finite, sanitize_logits, validate_text, validate_weights
from .logging import setup_logger
from .metrics import (
    RoutingEntropyMetric,
    ExpertUtilizationTracker,
    CacheHitRateMonitor,
    BatchOccupancyTracker,
    FusionDiagnostics,
)

__all__ = [
    "ExpertSignature",
    "FusionWeights",
    "RoutingLogits",
    "check_finite",
    "sanitize_logits",
    "validate_text",
    "validate_weights",
    "setup_logger",
    "RoutingEntropyMetric",
    "ExpertUtilizationTracker",
    "CacheHitRateMonitor",
    "BatchOccupancyTracker",
    "FusionDiagnostics",
]
