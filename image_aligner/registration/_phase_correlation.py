"""Translation estimation by phase correlation.

Frames are converted to float, centered in a zero-padded working area whose
sides are powers of two, and tapered with a Blackman window so that the frame
borders do not produce false correlation peaks. The peak of the inverse
normalized cross-power spectrum gives the integer translation; its immediate
neighbors refine it to sub-pixel precision if requested.
"""
import logging
import warnings
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from ..parameters import PhaseCorrelationSettings
from ._typing_utils import FloatArray, NumArray, Size, Vector

logger = logging.getLogger(__name__)

# Blackman window coefficients ("exact Blackman")
_A0 = 7938.0 / 18608
_A1 = 9240.0 / 18608
_A2 = 1430.0 / 18608


def _blackman(x: FloatArray) -> FloatArray:
    """0 for x=0, 1 for x=1."""
    return _A0 - _A1 * np.cos(np.pi * x) + _A2 * np.cos(2 * np.pi * x)


def blackman_window(width: int, height: int) -> FloatArray:
    """Radially symmetric window: 1 in the center, 0 outside the inscribed ellipse.

    Returns:
        float32 array of shape (height, width)
    """
    xs = np.arange(width)
    ys = np.arange(height)
    # The window is mirror symmetric along both axes.
    dx = (np.minimum(xs, width - 1 - xs) - width * 0.5) / (width * 0.5)
    dy = (np.minimum(ys, height - 1 - ys) - height * 0.5) / (height * 0.5)
    dist = dy[:, np.newaxis] ** 2 + dx[np.newaxis, :] ** 2
    window = np.where(dist < 1.0, _blackman(1.0 - dist), 0.0)
    return window.astype(np.float32)


def next_power_of_two(n: int) -> int:
    """Returns the smallest power of 2 which is > n."""
    return 1 << int(n).bit_length()


def working_size(sizes: Sequence[Size]) -> Size:
    """Size (width, height) of the FFT working area able to hold every frame."""
    max_width = max(w for w, _ in sizes)
    max_height = max(h for _, h in sizes)
    return next_power_of_two(max_width), next_power_of_two(max_height)


def placement_offset(size: Size, area: Size) -> Tuple[int, int]:
    """(x, y) position of an untranslated frame inside the working area."""
    return (area[0] - size[0]) // 2, (area[1] - size[1]) // 2


def prepare_frame(
    image: NumArray, area: Size, window: Optional[FloatArray] = None
) -> FloatArray:
    """Center a mono frame in a zero-padded working area and apply the window.

    Raises:
        ValueError: If the frame is not single channel, does not fit in the
            working area or contains non-finite values
    """
    if image.ndim != 2:
        raise ValueError(f"Expected a single channel frame, got shape {image.shape}")
    if not np.isfinite(image).all():
        raise ValueError("Frame contains non-finite values")
    height, width = image.shape
    if width > area[0] or height > area[1]:
        raise ValueError(f"Frame of size {(width, height)} does not fit in {area}")
    x0, y0 = placement_offset((width, height), area)
    padded = np.zeros((area[1], area[0]), dtype=np.float64)
    padded[y0:y0 + height, x0:x0 + width] = image
    if window is not None:
        padded *= window
    return padded


def validate_image_pair(image1: NumArray, image2: NumArray) -> None:
    """Validate a pair of images for translation computation.

    Raises:
        ValueError: If images are invalid or incompatible
    """
    if image1.ndim != 2 or image2.ndim != 2:
        raise ValueError("Images must be 2-dimensional")
    if image1.shape != image2.shape:
        raise ValueError(f"Images must have same shape. Got {image1.shape} and {image2.shape}")
    if not np.isfinite(image1).all() or not np.isfinite(image2).all():
        raise ValueError("Images contain non-finite values")


def _surface_from_spectra(reference_fft: NumArray, moving_fft: NumArray) -> FloatArray:
    cross_power = np.conjugate(reference_fft) * moving_fft
    # Normalize with epsilon for numerical stability
    epsilon = np.finfo(np.float64).eps * 100
    cross_power /= np.abs(cross_power) + epsilon
    result = np.fft.ifft2(cross_power)

    max_imag = np.max(np.abs(result.imag))
    if max_imag > 1e-6:
        warnings.warn(f"Large imaginary component in correlation surface: {max_imag:.2e}")
    return result.real


def phase_correlation_surface(reference: NumArray, moving: NumArray) -> FloatArray:
    """Compute the phase correlation surface of two equally sized frames.

    The surface is IFFT(conj(F1) * F2 / |conj(F1) * F2|); its peak lies at the
    displacement of `moving`'s content relative to `reference`, modulo the
    frame size.

    Returns:
        2D float64 array with the same shape as the inputs
    """
    validate_image_pair(reference, moving)
    reference_fft = np.fft.fft2(np.asarray(reference, dtype=np.float64))
    moving_fft = np.fft.fft2(np.asarray(moving, dtype=np.float64))
    return _surface_from_spectra(reference_fft, moving_fft)


def _parabolic_offset(lo: float, peak: float, hi: float) -> float:
    denom = lo - 2.0 * peak + hi
    if denom >= 0.0:
        return 0.0
    return float(np.clip(0.5 * (lo - hi) / denom, -0.5, 0.5))


def _foroosh_offset(lo: float, peak: float, hi: float) -> float:
    neighbor, sign = (hi, 1.0) if hi > lo else (lo, -1.0)
    for denom in (neighbor + peak, neighbor - peak):
        # A flat surface has no defined offset along this axis.
        if denom == 0.0:
            continue
        candidate = neighbor / denom
        if 0.0 < candidate < 1.0:
            return sign * candidate
    return 0.0


def locate_peak(
    surface: FloatArray, subpixel: bool, refinement: str = "parabolic"
) -> Vector:
    """Find the (x, y) translation encoded by the correlation surface's peak.

    Args:
        surface: phase correlation surface, indexed (y, x)
        subpixel: refine the integer peak position using its neighbors
        refinement: "parabolic" or "foroosh"

    Returns:
        (tx, ty); whole numbers unless `subpixel` is set
    """
    height, width = surface.shape
    peak_y, peak_x = np.unravel_index(int(np.argmax(surface)), surface.shape)
    peak_y, peak_x = int(peak_y), int(peak_x)

    tx = peak_x if peak_x < width // 2 else peak_x - width
    ty = peak_y if peak_y < height // 2 else peak_y - height

    logger.debug(f"Correlation peak {surface[peak_y, peak_x]:.4f} at ({tx}, {ty})")

    if not subpixel:
        return float(tx), float(ty)

    peak = float(surface[peak_y, peak_x])
    x_lo = float(surface[peak_y, (peak_x - 1) % width])
    x_hi = float(surface[peak_y, (peak_x + 1) % width])
    y_lo = float(surface[(peak_y - 1) % height, peak_x])
    y_hi = float(surface[(peak_y + 1) % height, peak_x])

    if refinement == "parabolic":
        dx = _parabolic_offset(x_lo, peak, x_hi)
        dy = _parabolic_offset(y_lo, peak, y_hi)
    elif refinement == "foroosh":
        dx = _foroosh_offset(x_lo, peak, x_hi)
        dy = _foroosh_offset(y_lo, peak, y_hi)
    else:
        raise ValueError(f"Unknown sub-pixel refinement: {refinement}")

    return tx + dx, ty + dy


def estimate_translation(
    reference: NumArray,
    moving: NumArray,
    subpixel: bool = True,
    settings: PhaseCorrelationSettings = PhaseCorrelationSettings(),
) -> Vector:
    """Estimate the translation of `moving` relative to `reference`.

    Both frames are single channel; they may differ in size, in which case
    each is centered in the common working area and the centering difference
    is removed from the result.
    """
    ref_size = (reference.shape[1], reference.shape[0])
    mov_size = (moving.shape[1], moving.shape[0])
    area = working_size([ref_size, mov_size])
    window = blackman_window(*area) if settings.apply_window else None
    surface = phase_correlation_surface(
        prepare_frame(reference, area, window), prepare_frame(moving, area, window)
    )
    tx, ty = locate_peak(surface, subpixel, settings.subpixel_refinement)
    ref_off = placement_offset(ref_size, area)
    mov_off = placement_offset(mov_size, area)
    return tx - (mov_off[0] - ref_off[0]), ty - (mov_off[1] - ref_off[1])


class PhaseCorrelationEstimator:
    """Determines translations of a whole frame sequence relative to frame 0.

    Each frame is correlated with its predecessor and the pairwise estimates
    are accumulated, so that
    translation(i) = translation(i - 1) + estimate(i - 1, i).
    """

    def __init__(
        self,
        subpixel: bool,
        settings: PhaseCorrelationSettings = PhaseCorrelationSettings(),
    ):
        self.subpixel = subpixel
        self.settings = settings

    def estimate_sequence(
        self,
        load_frame: Callable[[int], NumArray],
        sizes: Sequence[Size],
        on_translation: Callable[[int, Vector], None] = lambda _i, _t: None,
        checkpoint: Callable[[], None] = lambda: None,
    ) -> list[Vector]:
        """Estimate the translation of every frame.

        Args:
            load_frame: returns the single channel frame with the given index
            sizes: (width, height) of every frame
            on_translation: called with (index, accumulated translation) for
                every frame, in input order
            checkpoint: called once per frame; raises to cancel

        Returns:
            One (tx, ty) per frame; the first is (0, 0)
        """
        if not sizes:
            return []

        area = working_size(sizes)
        window = blackman_window(*area) if self.settings.apply_window else None
        logger.info(
            f"Phase correlation of {len(sizes)} frames in a {area[0]}x{area[1]} working area"
        )

        prev_fft = np.fft.fft2(prepare_frame(load_frame(0), area, window))
        prev_offset = placement_offset(sizes[0], area)
        translations: list[Vector] = [(0.0, 0.0)]
        on_translation(0, translations[0])

        for i in range(1, len(sizes)):
            checkpoint()
            curr_fft = np.fft.fft2(prepare_frame(load_frame(i), area, window))
            curr_offset = placement_offset(sizes[i], area)

            surface = _surface_from_spectra(prev_fft, curr_fft)
            tx, ty = locate_peak(surface, self.subpixel, self.settings.subpixel_refinement)
            tx -= curr_offset[0] - prev_offset[0]
            ty -= curr_offset[1] - prev_offset[1]

            prev_tx, prev_ty = translations[-1]
            translations.append((prev_tx + tx, prev_ty + ty))
            logger.debug(f"Frame {i}: pairwise ({tx:.3f}, {ty:.3f}), total {translations[-1]}")
            on_translation(i, translations[-1])

            prev_fft, prev_offset = curr_fft, curr_offset

        checkpoint()
        return translations
