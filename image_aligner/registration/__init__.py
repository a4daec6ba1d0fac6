"""Numeric kernels of the alignment pipelines."""

from ._limb_detection import (
    CircleFit,
    DiscEstimate,
    LimbDetection,
    detect_limb,
    detect_limbs,
    fit_circle,
)
from ._phase_correlation import (
    PhaseCorrelationEstimator,
    blackman_window,
    estimate_translation,
    locate_peak,
    phase_correlation_surface,
    working_size,
)
from ._stabilization import StabilizationResult, choose_radius, stabilize, track_feature

__all__ = [
    "CircleFit",
    "DiscEstimate",
    "LimbDetection",
    "PhaseCorrelationEstimator",
    "StabilizationResult",
    "blackman_window",
    "choose_radius",
    "detect_limb",
    "detect_limbs",
    "estimate_translation",
    "fit_circle",
    "locate_peak",
    "phase_correlation_surface",
    "stabilize",
    "track_feature",
    "working_size",
]
