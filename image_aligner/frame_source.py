"""Uniform access to the frames of an alignment run.

An alignment run is given either file paths or already decoded images. The
distinction is resolved once, when the run starts, by `create_frame_source`;
every stage after that loads frames by index through the `FrameSource`
interface.

DESIGN PRINCIPLE: Standardized Axes
------------------------------------
All loaders return arrays indexed (Y, X) for monochrome frames and
(Y, X, C) for multi-channel frames, regardless of the file format's own axis
ordering (FITS stores color planes first).
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence
import logging

import numpy as np
import skimage.io
import tifffile
from astropy.io import fits
from skimage.exposure import rescale_intensity

from .errors import InputError
from .parameters import AlignmentParameters, ImageInputs, PathInputs
from .registration._typing_utils import Size

logger = logging.getLogger(__name__)

FITS_EXTENSIONS = (".fit", ".fits")
TIFF_EXTENSIONS = (".tif", ".tiff")


def is_fits(path: Path) -> bool:
    return path.suffix.lower() in FITS_EXTENSIONS


def normalize_values(data: np.ndarray) -> np.ndarray:
    """Scale floating point pixel values to [0, 1]; other dtypes are unchanged."""
    if not np.issubdtype(data.dtype, np.floating):
        return data
    min_val, max_val = float(np.min(data)), float(np.max(data))
    if max_val > min_val:
        return ((data - min_val) / (max_val - min_val)).astype(np.float32)
    return np.zeros_like(data, dtype=np.float32)


def _read_fits(path: Path) -> np.ndarray:
    with fits.open(path) as hdul:
        data = hdul[0].data
        if data is None:
            raise ValueError("primary HDU has no image data")
        # Copy out of the memory map before the file is closed.
        data = np.array(data)
    if data.dtype.byteorder not in ("=", "|"):
        data = data.astype(data.dtype.newbyteorder("="))
    if data.ndim == 3:
        data = np.moveaxis(data, 0, -1)
    return data


def load_image(path: Path, normalize: bool = False) -> np.ndarray:
    """Load an image file, handling FITS, TIFF and the formats scikit-image reads.

    Raises:
        InputError: If the file cannot be read.
    """
    path = Path(path)
    logger.debug(f"Loading {path}")
    try:
        if is_fits(path):
            image = _read_fits(path)
            if normalize:
                image = normalize_values(image)
        elif path.suffix.lower() in TIFF_EXTENSIONS:
            image = tifffile.imread(path)
        else:
            image = skimage.io.imread(path)
    except Exception as e:
        raise InputError(f"Could not read {path}: {e}") from e

    if image.ndim not in (2, 3):
        raise InputError(f"Could not read {path}: unexpected image shape {image.shape}")
    return image


def image_size(path: Path) -> Size:
    """Get (width, height) of an image file without decoding it where possible."""
    path = Path(path)
    try:
        if is_fits(path):
            with fits.open(path) as hdul:
                header = hdul[0].header
                return int(header["NAXIS1"]), int(header["NAXIS2"])
        if path.suffix.lower() in TIFF_EXTENSIONS:
            with tifffile.TiffFile(path) as tif:
                page = tif.pages[0]
                return int(page.imagewidth), int(page.imagelength)
        image = skimage.io.imread(path)
    except Exception as e:
        raise InputError(f"Failed to obtain image dimensions from {path}: {e}") from e
    return int(image.shape[1]), int(image.shape[0])


def to_mono(image: np.ndarray) -> np.ndarray:
    """Convert to a single channel float32 frame (mean of the color channels)."""
    if image.ndim == 3:
        return image[..., :3].astype(np.float32).mean(axis=-1)
    return image.astype(np.float32)


def to_mono8(image: np.ndarray) -> np.ndarray:
    """Convert to a single channel uint8 frame, scaling the value range to 0..255."""
    mono = to_mono(image)
    if np.issubdtype(image.dtype, np.integer):
        scaled = mono * (255.0 / np.iinfo(image.dtype).max)
    elif mono.size and mono.min() >= 0.0 and mono.max() <= 1.0:
        scaled = mono * 255.0
    else:
        scaled = rescale_intensity(mono, out_range=(0.0, 255.0))
    return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)


class FrameSource(ABC):
    """Loads the frames of a run by index."""

    @abstractmethod
    def __len__(self) -> int:
        pass

    @abstractmethod
    def load(self, index: int) -> np.ndarray:
        """Load a frame with its original pixel format."""
        pass

    @abstractmethod
    def size(self, index: int) -> Size:
        """Get (width, height) of a frame."""
        pass

    def sizes(self) -> list[Size]:
        return [self.size(i) for i in range(len(self))]

    def load_mono(self, index: int) -> np.ndarray:
        return to_mono(self._load_finite(index))

    def load_mono8(self, index: int) -> np.ndarray:
        return to_mono8(self._load_finite(index))

    def _load_finite(self, index: int) -> np.ndarray:
        image = self.load(index)
        if np.issubdtype(image.dtype, np.floating) and not np.isfinite(image).all():
            raise InputError(f"{self.describe(index)} contains NaN or infinite pixel values")
        return image

    def path(self, index: int) -> Optional[Path]:
        """The file a frame comes from, or None for in-memory frames."""
        return None

    def describe(self, index: int) -> str:
        """Name of a frame for messages."""
        path = self.path(index)
        return str(path) if path is not None else f"image {index}"


class PathFrameSource(FrameSource):
    def __init__(self, paths: Sequence[Path], normalize: bool = False):
        self.paths = [Path(p) for p in paths]
        self.normalize = normalize

    def __len__(self) -> int:
        return len(self.paths)

    def load(self, index: int) -> np.ndarray:
        return load_image(self.paths[index], self.normalize)

    def size(self, index: int) -> Size:
        return image_size(self.paths[index])

    def path(self, index: int) -> Optional[Path]:
        return self.paths[index]

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({len(self.paths)} files)"


class ImageFrameSource(FrameSource):
    def __init__(self, images: Sequence[np.ndarray]):
        self.images = tuple(images)

    def __len__(self) -> int:
        return len(self.images)

    def load(self, index: int) -> np.ndarray:
        return self.images[index]

    def size(self, index: int) -> Size:
        height, width = self.images[index].shape[:2]
        return int(width), int(height)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({len(self.images)} images)"


def create_frame_source(params: AlignmentParameters) -> FrameSource:
    if isinstance(params.inputs, PathInputs):
        return PathFrameSource(params.inputs.paths, params.normalize_on_load)
    elif isinstance(params.inputs, ImageInputs):
        return ImageFrameSource(params.inputs.images)
    else:
        raise RuntimeError(f"Unexpected inputs: {type(params.inputs)}")
