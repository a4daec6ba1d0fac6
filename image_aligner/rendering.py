"""Resampling of aligned frames onto the output canvas, and output files."""
import logging
import math
import pathlib
from typing import Callable, Optional

import numpy as np
import tifffile
from astropy.io import fits
from scipy import ndimage

from .errors import OutputError
from .frame_source import is_fits
from .geometry import Rect
from .registration._typing_utils import Vector

logger = logging.getLogger(__name__)

# Rows rendered between cancellation checkpoints
BLOCK_ROWS = 256
# Extra source rows around a block, so spline prefiltering sees enough context
_SOURCE_MARGIN = 16


def whole_pixels(translation: Vector) -> Vector:
    return float(round(translation[0])), float(round(translation[1]))


def _render_channel(
    channel: np.ndarray,
    translation: Vector,
    canvas: Rect,
    order: int,
    checkpoint: Callable[[], None],
) -> np.ndarray:
    tx, ty = translation
    height = channel.shape[0]
    out = np.zeros((canvas.height, canvas.width), dtype=np.float64)

    for r0 in range(0, canvas.height, BLOCK_ROWS):
        checkpoint()
        r1 = min(r0 + BLOCK_ROWS, canvas.height)
        # Output row r samples source row canvas.y + r + ty.
        src_y0 = canvas.y + r0 + ty
        src_y1 = canvas.y + r1 - 1 + ty
        lo = max(math.floor(src_y0) - _SOURCE_MARGIN, 0)
        hi = min(math.ceil(src_y1) + _SOURCE_MARGIN + 1, height)
        if hi <= lo:
            continue
        ndimage.affine_transform(
            channel[lo:hi].astype(np.float64),
            matrix=[1.0, 1.0],
            offset=(src_y0 - lo, canvas.x + tx),
            output_shape=(r1 - r0, canvas.width),
            output=out[r0:r1],
            order=order,
            mode="constant",
            cval=0.0,
        )
    return out


def _cast_like(data: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(data), info.min, info.max).astype(dtype)
    return data.astype(dtype)


def render_frame(
    image: np.ndarray,
    translation: Vector,
    canvas: Rect,
    order: int = 1,
    checkpoint: Callable[[], None] = lambda: None,
) -> np.ndarray:
    """Resample a frame into the canvas, undoing its translation.

    Output pixel (u, v) samples the source at (canvas.x + u + tx, canvas.y + v + ty);
    samples falling outside the source are 0.

    Args:
        image: (H, W) or (H, W, C) frame; not modified
        translation: (tx, ty) of the frame relative to frame 0
        canvas: output rectangle in reference coordinates
        order: spline order, 1 for bilinear, 3 for bicubic
        checkpoint: called between row blocks; raises to cancel

    Returns:
        (canvas.height, canvas.width[, C]) array with the dtype of `image`
    """
    if image.ndim == 2:
        rendered = _render_channel(image, translation, canvas, order, checkpoint)
    elif image.ndim == 3:
        rendered = np.stack(
            [
                _render_channel(image[..., c], translation, canvas, order, checkpoint)
                for c in range(image.shape[2])
            ],
            axis=-1,
        )
    else:
        raise ValueError(f"Unexpected image shape: {image.shape}")
    return _cast_like(rendered, image.dtype)


def output_path(
    input_path: pathlib.Path, output_dir: pathlib.Path, suffix: Optional[str] = None
) -> pathlib.Path:
    """Name of the output file for an input file.

    FITS inputs are written as FITS, everything else as TIFF.
    """
    input_path = pathlib.Path(input_path)
    extension = ".fit" if is_fits(input_path) else ".tif"
    return pathlib.Path(output_dir) / f"{input_path.stem}{suffix or ''}{extension}"


def save_frame(image: np.ndarray, path: pathlib.Path) -> None:
    """Write an aligned frame, choosing the format by file extension.

    Raises:
        OutputError: If the file cannot be written.
    """
    path = pathlib.Path(path)
    logger.info(f"Writing {path}")
    try:
        if is_fits(path):
            # FITS stores color planes first.
            data = np.moveaxis(image, -1, 0) if image.ndim == 3 else image
            fits.PrimaryHDU(data=data).writeto(path, overwrite=True)
        else:
            photometric = "rgb" if image.ndim == 3 and image.shape[2] in (3, 4) else "minisblack"
            tifffile.imwrite(path, image, photometric=photometric)
    except Exception as e:
        raise OutputError(f"Failed to save {path}: {e}") from e


def combine_channels(red: np.ndarray, green: np.ndarray, blue: np.ndarray) -> np.ndarray:
    """Stack three single channel frames into one (H, W, 3) image."""
    if not (red.shape == green.shape == blue.shape) or red.ndim != 2:
        raise ValueError(
            f"Channels must be equally sized 2D frames, got {red.shape}, {green.shape}, {blue.shape}"
        )
    return np.stack([red, green, blue], axis=-1)
