"""Image Aligner Package.

This package aligns sequences of astronomical frames so that they can be
stacked, recombined or compared pixel by pixel.

Main functionality:
- Phase correlation: translation between frames from their cross-power spectrum
- Limb alignment: keep the edge of a solar, lunar or planetary disc stationary
- Canvas planning: crop to the common area or pad to the bounding box
- Background runs: a coordinator with an event stream and cooperative cancellation
- RGB recombination: align three color channels and merge them

The package exposes the run-level API at the top level for convenience.
"""

from .coordinator import AlignmentCoordinator, AlignmentState, align_rgb
from .errors import (
    AlignmentError,
    ConvergenceError,
    DetectionError,
    GeometryError,
    InputError,
    OutputError,
    UserAbort,
)
from .events import AbortReason, ProgressCallbacks, is_terminal
from .geometry import Rect, plan_canvas
from .parameters import (
    AlignmentMethod,
    AlignmentParameters,
    CropMode,
    ImageInputs,
    Interpolation,
    PathInputs,
)

__all__ = [
    'AlignmentCoordinator',
    'AlignmentState',
    'align_rgb',
    'AlignmentError',
    'ConvergenceError',
    'DetectionError',
    'GeometryError',
    'InputError',
    'OutputError',
    'UserAbort',
    'AbortReason',
    'ProgressCallbacks',
    'is_terminal',
    'Rect',
    'plan_canvas',
    'AlignmentMethod',
    'AlignmentParameters',
    'CropMode',
    'ImageInputs',
    'Interpolation',
    'PathInputs',
]
