"""Sequence-wide stabilization of limb alignment.

Each frame's fitted circle is a noisy observation of the same disc. The
solver alternates between two steps until neither changes:

- refit every frame's center with the radius forced to the consensus radius,
  which makes the centers comparable across frames;
- shift every frame's limb points into reference coordinates and fit a single
  consensus circle through all of them, updating the consensus radius.

The translation of a frame is the displacement of its disc center relative
to frame 0.

Optionally, `track_feature` then follows one high-contrast area of the disc
from frame to frame and smooths its motion, the way one would align the frames
by hand.
"""
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Sequence, Tuple

import numpy as np
from skimage.filters import gaussian

from ..errors import ConvergenceError, DetectionError
from ..parameters import StabilizationSettings
from ._limb_detection import LimbDetection, fit_circle
from ._phase_correlation import blackman_window, locate_peak, phase_correlation_surface
from ._typing_utils import FloatArray, NumArray, Vector

if TYPE_CHECKING:
    from ..geometry import Rect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StabilizationResult:
    translations: list[Vector]
    radius: float
    iterations: int


def choose_radius(
    detections: Sequence[LimbDetection], max_radius_ratio: float
) -> float:
    """Pick the consensus radius; reject sequences whose radii disagree too much."""
    radii = np.array([d.estimate.radius for d in detections])
    if radii.min() <= 0 or radii.max() / radii.min() > max_radius_ratio:
        raise DetectionError("Could not determine valid disc radius in every image.")
    return float(radii.mean())


def _translations_from_centers(centers: np.ndarray) -> np.ndarray:
    return centers - centers[0]


def stabilize(
    detections: Sequence[LimbDetection],
    settings: StabilizationSettings = StabilizationSettings(),
    on_radius_chosen: Callable[[float], None] = lambda _r: None,
    on_progress: Callable[[float], None] = lambda _f: None,
    checkpoint: Callable[[], None] = lambda: None,
) -> StabilizationResult:
    """Compute jointly consistent translations for a sequence of limb detections.

    Args:
        detections: one detection per frame, in sequence order
        settings: iteration limit, tolerance and radius sanity bound
        on_radius_chosen: called once with the initial consensus radius
        on_progress: called with the completed fraction after each iteration,
            and with 1.0 on convergence
        checkpoint: called once per iteration and once per frame; raises to cancel

    Raises:
        DetectionError: If the per-frame radii are inconsistent
        ConvergenceError: If the iteration limit is reached without convergence
    """
    if not detections:
        raise ValueError("Cannot stabilize an empty sequence")

    radius = choose_radius(detections, settings.max_radius_ratio)
    logger.info(f"Consensus disc radius: {radius:.2f}")
    on_radius_chosen(radius)

    centers = np.array([d.estimate.centroid for d in detections], dtype=np.float64)
    translations = _translations_from_centers(centers)

    for k in range(settings.max_iterations):
        checkpoint()

        new_centers = np.empty_like(centers)
        for i, detection in enumerate(detections):
            checkpoint()
            fit = fit_circle(
                detection.limb_points, initial_center=tuple(centers[i]), radius=radius
            )
            new_centers[i] = fit.center
        new_translations = _translations_from_centers(new_centers)

        pooled = np.concatenate(
            [d.limb_points - t for d, t in zip(detections, new_translations)]
        )
        consensus = fit_circle(pooled, initial_center=tuple(new_centers[0]))

        delta = max(
            float(np.max(np.abs(new_translations - translations))),
            abs(consensus.radius - radius),
        )
        centers, translations, radius = new_centers, new_translations, consensus.radius
        logger.debug(
            f"Stabilization iteration {k + 1}: radius {radius:.3f}, "
            f"residual {consensus.residual:.3f}, delta {delta:.2e}"
        )
        on_progress((k + 1) / settings.max_iterations)

        if delta < settings.tolerance:
            on_progress(1.0)
            logger.info(f"Stabilization converged after {k + 1} iterations")
            return StabilizationResult(
                translations=[(float(tx), float(ty)) for tx, ty in translations],
                radius=radius,
                iterations=k + 1,
            )

    raise ConvergenceError(
        f"Stabilization did not converge within {settings.max_iterations} iterations"
    )


# Pixels skipped at the area borders when measuring contrast
_QUALITY_BORDER = 3
# Tracks spanning less than this (pixels) belong to a stationary feature.
_MIN_TRACK_EXTENT = 2.0
# Translations this close to a whole pixel are treated as whole, as in canvas planning.
_WHOLE_PIXEL_EPSILON = 1e-6


def area_quality(area: NumArray) -> float:
    """Contrast of an image area: the sum of its squared gradients."""
    b = _QUALITY_BORDER
    inner = np.asarray(area, dtype=np.float64)[b:-b, b:-b]
    return float(np.sum(np.diff(inner, axis=1) ** 2) + np.sum(np.diff(inner, axis=0) ** 2))


def _whole_pixels(translation: Vector) -> Tuple[int, int]:
    return (
        math.floor(translation[0] + _WHOLE_PIXEL_EPSILON),
        math.floor(translation[1] + _WHOLE_PIXEL_EPSILON),
    )


def _area(
    frame: NumArray, translation: Vector, canvas: "Rect", center: Tuple[int, int], size: int
) -> NumArray:
    """The square area of `frame` centered at `center`, relative to the canvas origin.

    The area starts on the frame's pixel grid, so it is displaced from the
    requested position by the fractional part of `translation`.
    """
    ix, iy = _whole_pixels(translation)
    x0 = canvas.x + center[0] - size // 2 + ix
    y0 = canvas.y + center[1] - size // 2 + iy
    return frame[y0:y0 + size, x0:x0 + size]


def _area_fits(center: Tuple[int, int], size: int, canvas: "Rect") -> bool:
    x0, y0 = center[0] - size // 2, center[1] - size // 2
    return x0 >= 0 and y0 >= 0 and x0 + size <= canvas.width and y0 + size <= canvas.height


def find_feature(
    frame: NumArray, translation: Vector, canvas: "Rect", size: int
) -> Optional[Tuple[int, int]]:
    """Center of the frame's highest-contrast area inside the canvas.

    Candidate areas are spaced by half their size. Returns None if every
    candidate is flat.
    """
    step = size // 2
    best_quality = 0.0
    best_center = None
    for j in range(canvas.height // step - 1):
        for i in range(canvas.width // step - 1):
            center = (i * step + step, j * step + step)
            quality = area_quality(_area(frame, translation, canvas, center, size))
            if quality > best_quality:
                best_quality, best_center = quality, center
    return best_center


def smooth_track(track: NumArray) -> FloatArray:
    """Offsets that move tracked feature positions onto a smooth track.

    The positions are projected onto a circle fitted through them. A position
    whose projection would fall behind its predecessor's (against the overall
    direction of motion) is moved to the predecessor's projection instead.
    A feature that hardly moves is held at its mean position.

    Returns:
        (n, 2) array of offsets, one per position

    Raises:
        ConvergenceError: If no circle can be fitted to the positions
    """
    track = np.asarray(track, dtype=np.float64)
    if len(track) and float(np.ptp(track, axis=0).max()) < _MIN_TRACK_EXTENT:
        return track.mean(axis=0) - track
    if len(track) < 3:
        return np.zeros_like(track)

    try:
        circle = fit_circle(track)
    except DetectionError as e:
        raise ConvergenceError(f"Could not fit a circle to the tracked feature: {e}") from e

    center = np.array(circle.center)
    first, last = track[0] - center, track[-1] - center
    direction = first[0] * last[1] - first[1] * last[0]

    projected = track.copy()
    for i, point in enumerate(track):
        v = point - center
        length = float(np.hypot(v[0], v[1]))
        if length < 1e-8:
            continue
        proj = center + circle.radius * v / length
        if i > 0:
            prev = projected[i - 1] - center
            if (prev[0] * v[1] - prev[1] * v[0]) * direction < 0:
                proj = projected[i - 1]
        projected[i] = proj
    return projected - track


def track_feature(
    load_frame: Callable[[int], NumArray],
    translations: Sequence[Vector],
    common_area: "Rect",
    settings: StabilizationSettings = StabilizationSettings(),
    on_progress: Callable[[float], None] = lambda _f: None,
    checkpoint: Callable[[], None] = lambda: None,
) -> list[Vector]:
    """Remove the remaining jitter by following one feature through the frames.

    The highest-contrast area of the first frame (e.g. a sunspot or the base
    of a prominence) is located inside the frames' common area and traced from
    frame to frame by phase correlation. Such a feature travels smoothly, along
    an arc for a rotating disc; the fitting noise of the disc makes it jump
    around that arc instead. Each frame's translation is corrected by the
    offset that moves the feature onto the smoothed track.

    Args:
        load_frame: returns the single channel frame with the given index
        translations: translations found by the disc fit, one per frame
        common_area: the frames' intersection in reference coordinates
        settings: size of the tracked area and the blur applied before tracking
        on_progress: called with the fraction of frames processed
        checkpoint: called once per frame; raises to cancel

    Returns:
        Corrected translations, still relative to frame 0. Unchanged if the
        frames' common area is smaller than the tracked area.

    Raises:
        ConvergenceError: If there is no feature to track or its track cannot be smoothed
    """
    size = settings.feature_area_size
    canvas = common_area
    if canvas.width < size or canvas.height < size:
        logger.warning(f"Frames share less than a {size}x{size} area; skipping feature tracking")
        return list(translations)

    def blurred(i: int) -> FloatArray:
        frame = np.asarray(load_frame(i), dtype=np.float64)
        return gaussian(frame, sigma=settings.feature_blur_sigma, preserve_range=True)

    checkpoint()
    prev_frame = blurred(0)
    center = find_feature(prev_frame, translations[0], canvas, size)
    if center is None:
        raise ConvergenceError("Could not find a feature with enough contrast to track")
    logger.info(f"Tracking the {size}x{size} area at {center} of the frames' common area")

    window = blackman_window(size, size)
    track = [(float(center[0]), float(center[1]))]
    prev_area = _area(prev_frame, translations[0], canvas, center, size) * window
    prev_frac = np.subtract(translations[0], _whole_pixels(translations[0]))

    for i in range(1, len(translations)):
        checkpoint()
        frame = blurred(i)
        frac = np.subtract(translations[i], _whole_pixels(translations[i]))
        surface = phase_correlation_surface(
            prev_area, _area(frame, translations[i], canvas, center, size) * window
        )
        dx, dy = locate_peak(surface, subpixel=True)
        # The areas start on whole pixels of their frames.
        step_x, step_y = np.subtract((dx, dy), frac - prev_frac)
        track.append((track[-1][0] + float(step_x), track[-1][1] + float(step_y)))

        moved = (center[0] + int(dx), center[1] + int(dy))
        if _area_fits(moved, size, canvas):
            center = moved
        prev_area = _area(frame, translations[i], canvas, center, size) * window
        prev_frac = frac
        on_progress(i / len(translations))

    corrections = smooth_track(np.array(track))
    logger.debug(f"Feature track corrections: {corrections.tolist()}")
    corrected = np.asarray(translations, dtype=np.float64) - corrections
    corrected -= corrected[0]
    on_progress(1.0)
    return [(float(tx), float(ty)) for tx, ty in corrected]
