"""Output canvas planning.

All rectangles are expressed in the coordinate system of the reference
frame (frame 0). A frame whose content is displaced by translation (tx, ty)
relative to the reference covers [-tx, -tx + width) x [-ty, -ty + height).
"""
import math
from dataclasses import dataclass
from typing import Sequence

from .errors import GeometryError
from .parameters import CropMode
from .registration._typing_utils import Size, Vector


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(self.width, 0) * max(self.height, 0)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True)
class _Bounds:
    xmin: float
    ymin: float
    xmax: float
    ymax: float


# Translations this close to a whole pixel are treated as whole.
SNAP_EPSILON = 1e-6


def _snap(value: float) -> float:
    nearest = round(value)
    return float(nearest) if abs(value - nearest) < SNAP_EPSILON else value


def frame_bounds(size: Size, translation: Vector) -> _Bounds:
    width, height = size
    tx, ty = _snap(float(translation[0])), _snap(float(translation[1]))
    return _Bounds(-tx, -ty, -tx + width, -ty + height)


def plan_canvas(
    sizes: Sequence[Size], translations: Sequence[Vector], crop_mode: CropMode
) -> Rect:
    """Compute the output rectangle shared by all frames.

    Args:
        sizes: (width, height) of every frame
        translations: (tx, ty) of every frame relative to frame 0
        crop_mode: crop to the frames' intersection or pad to their bounding box

    Returns:
        The canvas, with whole-pixel origin and size

    Raises:
        ValueError: If there are no frames or the sequences differ in length
        GeometryError: If the frames do not overlap in crop-to-intersection mode
    """
    if len(sizes) != len(translations):
        raise ValueError(
            f"Got {len(sizes)} frame sizes but {len(translations)} translations"
        )
    if not sizes:
        raise ValueError("Cannot plan a canvas for zero frames")

    bounds = [frame_bounds(s, t) for s, t in zip(sizes, translations)]

    if crop_mode == CropMode.crop_to_intersection:
        # Snap inward: only whole pixels covered by every frame.
        x0 = math.ceil(max(b.xmin for b in bounds))
        y0 = math.ceil(max(b.ymin for b in bounds))
        x1 = math.floor(min(b.xmax for b in bounds))
        y1 = math.floor(min(b.ymax for b in bounds))
        canvas = Rect(x0, y0, x1 - x0, y1 - y0)
        if canvas.is_empty:
            raise GeometryError(
                "The aligned images do not overlap; their intersection is empty."
            )
        return canvas
    elif crop_mode == CropMode.pad_to_bounding_box:
        x0 = math.floor(min(b.xmin for b in bounds))
        y0 = math.floor(min(b.ymin for b in bounds))
        x1 = math.ceil(max(b.xmax for b in bounds))
        y1 = math.ceil(max(b.ymax for b in bounds))
        return Rect(x0, y0, x1 - x0, y1 - y0)
    else:
        raise RuntimeError(f"Unexpected CropMode value: {crop_mode}")
