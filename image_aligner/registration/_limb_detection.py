"""Disc limb detection.

Finds the edge of a single bright disc (Sun, Moon, planet) against a dark
background and fits a circle to it:

1. Separate disc and background with a histogram threshold.
2. Cast rays from the brightness centroid (which lies inside the disc)
   towards the image border.
3. Along each ray, locate the steepest brightness transition near the
   outermost above-threshold pixel; that is a limb point candidate.
4. Discard candidates that are too shallow (e.g. the edge of a sunspot or
   filament) or whose neighborhood is mostly above the threshold (e.g. a
   prominence).
5. Fit a circle to the remaining points by least squares.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from scipy import ndimage
from scipy.optimize import least_squares
from skimage.filters import threshold_otsu

from ..errors import DetectionError
from ..parameters import LimbDetectionSettings
from ._typing_utils import FloatArray, IntArray, NumArray, Size, Vector

logger = logging.getLogger(__name__)

# Number of rays traced between cancellation checkpoints
RAYS_PER_CHECKPOINT = 16


@dataclass(frozen=True)
class DiscEstimate:
    """A fitted disc: center (x, y), radius, and the size of its frame."""

    centroid: Vector
    radius: float
    image_size: Size

    def __post_init__(self) -> None:
        if not np.isfinite(self.radius) or self.radius <= 0:
            raise DetectionError(f"Invalid disc radius: {self.radius}")
        x, y = self.centroid
        width, height = self.image_size
        if not (0 <= x < width and 0 <= y < height):
            raise DetectionError(
                f"Disc center ({x:.1f}, {y:.1f}) lies outside the {width}x{height} image"
            )


@dataclass(frozen=True)
class LimbDetection:
    estimate: DiscEstimate
    limb_points: FloatArray
    """(n, 2) array of (x, y) points on the limb."""
    residual: float
    """RMS distance of the limb points from the fitted circle."""


@dataclass(frozen=True)
class CircleFit:
    center: Vector
    radius: float
    residual: float


def fit_circle(
    points: NumArray,
    initial_center: Optional[Vector] = None,
    radius: Optional[float] = None,
) -> CircleFit:
    """Least-squares fit of a circle to (x, y) points.

    Args:
        points: (n, 2) array of points
        initial_center: starting center; defaults to the points' mean
        radius: if given, only the center is fitted and the radius is fixed

    Returns:
        The fitted circle and the RMS of the point distances from it

    Raises:
        DetectionError: If the fit does not produce a valid circle
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2 or len(pts) < (2 if radius else 3):
        raise DetectionError(f"Not enough points to fit a circle: {len(pts)}")

    x, y = pts[:, 0], pts[:, 1]
    if initial_center is None:
        cx0, cy0 = float(x.mean()), float(y.mean())
    else:
        cx0, cy0 = initial_center

    def distances(cx: float, cy: float) -> FloatArray:
        # Guard against a center coinciding with a point.
        return np.maximum(np.hypot(x - cx, y - cy), 1e-12)

    if radius is None:
        r0 = float(np.mean(distances(cx0, cy0)))

        def residuals(p: FloatArray) -> FloatArray:
            return distances(p[0], p[1]) - p[2]

        def jacobian(p: FloatArray) -> FloatArray:
            d = distances(p[0], p[1])
            return np.column_stack([(p[0] - x) / d, (p[1] - y) / d, -np.ones_like(d)])

        result = least_squares(residuals, [cx0, cy0, r0], jac=jacobian, method="lm")
        cx, cy, r = (float(v) for v in result.x)
    else:
        def residuals(p: FloatArray) -> FloatArray:
            return distances(p[0], p[1]) - radius

        def jacobian(p: FloatArray) -> FloatArray:
            d = distances(p[0], p[1])
            return np.column_stack([(p[0] - x) / d, (p[1] - y) / d])

        result = least_squares(residuals, [cx0, cy0], jac=jacobian, method="lm")
        cx, cy = (float(v) for v in result.x)
        r = float(radius)

    if not (np.isfinite(cx) and np.isfinite(cy) and np.isfinite(r)) or r <= 0:
        raise DetectionError("Circle fit did not converge to a valid circle")

    rms = float(np.sqrt(np.mean((np.hypot(x - cx, y - cy) - r) ** 2)))
    return CircleFit(center=(cx, cy), radius=r, residual=rms)


def find_disc_threshold(image: NumArray) -> Tuple[int, float, float]:
    """Find the brightness separating the disc from the background.

    Returns:
        (threshold, mean disc brightness, mean background brightness)
    """
    if image.min() == image.max():
        raise DetectionError("Image has no contrast")
    threshold = int(threshold_otsu(image))
    disc = image > threshold
    if not disc.any() or disc.all():
        raise DetectionError("Could not separate the disc from the background")
    return threshold, float(image[disc].mean()), float(image[~disc].mean())


def ray_coordinates(origin: Vector, angle: float, shape: Tuple[int, int]) -> Tuple[IntArray, IntArray]:
    """Pixel coordinates of a ray from `origin` to the image border.

    Consecutive points advance by one pixel along the ray's dominant axis.
    """
    height, width = shape
    dx, dy = np.cos(angle), np.sin(angle)
    step = 1.0 / max(abs(dx), abs(dy))
    t = np.arange(width + height) * step
    xs = np.rint(origin[0] + t * dx).astype(np.int64)
    ys = np.rint(origin[1] + t * dy).astype(np.int64)
    inside = (xs >= 0) & (xs < width) & (ys >= 0) & (ys < height)
    length = len(inside) if inside.all() else int(np.argmin(inside))
    return xs[:length], ys[:length]


def find_limb_crossing(
    values: NumArray, threshold: int, settings: LimbDetectionSettings
) -> Tuple[int, float]:
    """Find where a ray running from inside the disc outwards crosses the limb.

    Returns:
        (index of the first pixel outside the disc, steepness of the transition)
    """
    values = np.asarray(values, dtype=np.float64).copy()
    n = len(values)
    if n <= settings.skip_border:
        return 0, 0.0

    # A sharpened image may have a bright border; flatten both ends of the ray.
    n_avg = min(settings.border_average, n)
    if n_avg > 0:
        values[:n_avg] = values[:n_avg].mean()
        values[n - n_avg:] = values[n - n_avg:].mean()

    start = n - settings.skip_border
    above = np.nonzero(values[:start + 1] >= threshold)[0]
    pos = int(above[-1]) if len(above) else 0
    # The threshold may catch a halo or a prominence; begin the scan further inside.
    pos = max(pos - max(settings.back_offset, pos // 10), 0)

    size = settings.diff_size
    padded = np.concatenate([np.full(size, values[0]), values, np.full(size, values[-1])])
    cumsum = np.concatenate([[0.0], np.cumsum(padded)])
    idx = np.arange(pos, n) + size
    sum_lo = cumsum[idx] - cumsum[idx - size]
    sum_hi = cumsum[idx + size] - cumsum[idx]
    diffs = np.abs(sum_hi - sum_lo)

    best = int(np.argmax(diffs))
    return pos + best, float(diffs[best])


def _above_threshold_fraction(
    image: NumArray, point: Vector, radius: int, threshold: int
) -> float:
    height, width = image.shape
    px, py = point
    x0, x1 = max(int(px - radius), 0), min(int(px + radius), width - 1)
    y0, y1 = max(int(py - radius), 0), min(int(py + radius), height - 1)
    ys, xs = np.mgrid[y0:y1 + 1, x0:x1 + 1]
    within = (xs - px) ** 2 + (ys - py) ** 2 <= radius ** 2
    if not within.any():
        return 0.0
    return float(np.mean(image[ys[within], xs[within]] > threshold))


def detect_limb(
    image: NumArray,
    settings: LimbDetectionSettings = LimbDetectionSettings(),
    checkpoint: Callable[[], None] = lambda: None,
) -> LimbDetection:
    """Locate the limb of the disc in an 8-bit single channel frame and fit a circle.

    Raises:
        DetectionError: If too few limb points are found or the fit is poor
    """
    if image.ndim != 2:
        raise ValueError(f"Expected a single channel frame, got shape {image.shape}")
    height, width = image.shape

    threshold, avg_disc, avg_background = find_disc_threshold(image)

    cy, cx = ndimage.center_of_mass(image)
    if not (np.isfinite(cx) and np.isfinite(cy)):
        raise DetectionError("Could not determine the image centroid")
    origin = (float(cx), float(cy))

    candidates: list[Tuple[float, Vector]] = []
    for j in range(settings.num_rays):
        if j % RAYS_PER_CHECKPOINT == 0:
            checkpoint()
        xs, ys = ray_coordinates(origin, 2 * np.pi * j / settings.num_rays, (height, width))
        if len(xs) == 0:
            continue
        i, steepness = find_limb_crossing(image[ys, xs], threshold, settings)
        # The limb lies between the last disc pixel and the first background pixel.
        k = max(i - 1, 0)
        point = ((xs[k] + xs[i]) / 2.0, (ys[k] + ys[i]) / 2.0)
        candidates.append((steepness, point))

    expected_steepness = settings.diff_size * (avg_disc - avg_background)
    min_steepness = expected_steepness / settings.steepness_divisor
    points = [p for s, p in candidates if s >= min_steepness]

    fractions = [
        _above_threshold_fraction(image, p, settings.diff_size, threshold) for p in points
    ]
    exceeding = [f > settings.max_above_threshold_fraction for f in fractions]
    # Mostly exceeding means an overexposed disc; keep every point then.
    if sum(exceeding) < 3 * len(points) / 4:
        points = [p for p, e in zip(points, exceeding) if not e]

    logger.info(f"Found {len(candidates)} limb point candidates, used {len(points)}")

    if len(points) < settings.min_points:
        raise DetectionError(
            f"Found only {len(points)} limb points (at least {settings.min_points} required)"
        )

    limb_points = np.array(points, dtype=np.float64)
    fit = fit_circle(limb_points, initial_center=origin)
    if fit.residual > settings.max_fit_residual:
        raise DetectionError(
            f"Limb points deviate from a circle by {fit.residual:.2f} px RMS "
            f"(at most {settings.max_fit_residual} allowed)"
        )

    estimate = DiscEstimate(centroid=fit.center, radius=fit.radius, image_size=(width, height))
    return LimbDetection(estimate=estimate, limb_points=limb_points, residual=fit.residual)


def detect_limbs(
    load_frame: Callable[[int], NumArray],
    num_frames: int,
    settings: LimbDetectionSettings = LimbDetectionSettings(),
    on_detection: Callable[[int, LimbDetection], None] = lambda _i, _d: None,
    checkpoint: Callable[[], None] = lambda: None,
    describe: Callable[[int], str] = str,
) -> list[LimbDetection]:
    """Detect the disc in every frame. Any failure fails the whole sequence."""
    detections = []
    for i in range(num_frames):
        checkpoint()
        try:
            detection = detect_limb(load_frame(i), settings, checkpoint)
        except DetectionError as e:
            raise DetectionError(f"Could not find the limb in {describe(i)}: {e}") from e
        logger.debug(
            f"Frame {i}: disc at ({detection.estimate.centroid[0]:.2f}, "
            f"{detection.estimate.centroid[1]:.2f}), radius {detection.estimate.radius:.2f}"
        )
        detections.append(detection)
        on_detection(i, detection)
    return detections

