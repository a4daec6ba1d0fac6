import contextlib
import pathlib
import queue
import tempfile
from typing import Generator, Sequence

import numpy as np
import skimage.filters
import tifffile
from astropy.io import fits
from scipy import ndimage

from .registration._typing_utils import Size, Vector

PARAMETERS_FIXTURE_FILE = (
    pathlib.Path(__file__).parent.parent
    / "test_fixtures"
    / "parameters_test"
    / "parameters.json"
)


def textured_field(width: int, height: int, sigma: float = 2.0, seed: int = 0) -> np.ndarray:
    """Smooth random texture with values in [0, 1], like a cloudy sky or granulation."""
    rng = np.random.default_rng(seed)
    field = skimage.filters.gaussian(rng.random((height, width)), sigma=sigma)
    field -= field.min()
    field /= field.max()
    return field.astype(np.float32)


def shifted_crops(
    field: np.ndarray,
    size: Size,
    translations: Sequence[Vector],
    origin: tuple[int, int] = (100, 100),
) -> list[np.ndarray]:
    """Cut frames from `field` whose content is displaced by whole-pixel `translations`.

    A feature at p in the first frame appears at p + translations[i] in frame i.
    """
    width, height = size
    x0, y0 = origin
    frames = []
    for tx, ty in translations:
        left, top = x0 - int(tx), y0 - int(ty)
        if left < 0 or top < 0 or left + width > field.shape[1] or top + height > field.shape[0]:
            raise ValueError(f"Translation {(tx, ty)} moves the crop outside the field")
        frames.append(field[top:top + height, left:left + width].copy())
    return frames


def to_uint16(image: np.ndarray) -> np.ndarray:
    return np.rint(image * 65535).astype(np.uint16)


def disc_coverage(size: Size, center: Vector, radius: float) -> np.ndarray:
    """Fraction of every pixel covered by a disc, antialiased over one pixel."""
    width, height = size
    ys, xs = np.mgrid[0:height, 0:width]
    dist = np.hypot(xs - center[0], ys - center[1])
    return np.clip(radius + 0.5 - dist, 0.0, 1.0)


def disc_image(
    size: Size,
    center: Vector,
    radius: float,
    disc_level: float = 200.0,
    background_level: float = 20.0,
    noise: float = 2.0,
    seed: int = 0,
) -> np.ndarray:
    """8-bit frame of a uniformly bright disc on a dark background."""
    coverage = disc_coverage(size, center, radius)
    image = background_level + (disc_level - background_level) * coverage
    if noise > 0:
        image = image + np.random.default_rng(seed).normal(0.0, noise, image.shape)
    return np.clip(np.rint(image), 0, 255).astype(np.uint8)


def jittered_disc_frames(
    jitter: Sequence[Vector],
    size: Size = (256, 256),
    radius: float = 60.0,
) -> list[np.ndarray]:
    """Disc frames whose centers are displaced by `jitter` from the image center."""
    cx, cy = size[0] / 2.0, size[1] / 2.0
    return [
        disc_image(size, (cx + jx, cy + jy), radius, seed=i)
        for i, (jx, jy) in enumerate(jitter)
    ]


def textured_disc_frames(
    jitter: Sequence[Vector],
    size: Size = (256, 256),
    radius: float = 80.0,
    seed: int = 0,
) -> list[np.ndarray]:
    """8-bit disc frames with surface detail, displaced by `jitter` from the image center.

    The detail (think sunspots or craters) moves together with the disc.
    """
    width, height = size
    detail = textured_field(width, height, sigma=3.0, seed=seed)
    rng = np.random.default_rng(seed)
    frames = []
    for jx, jy in jitter:
        moved = ndimage.shift(detail, (jy, jx), order=1, mode="nearest")
        coverage = disc_coverage(size, (width / 2.0 + jx, height / 2.0 + jy), radius)
        image = 20.0 + coverage * (130.0 + 100.0 * moved) + rng.normal(0.0, 2.0, coverage.shape)
        frames.append(np.clip(np.rint(image), 0, 255).astype(np.uint8))
    return frames


def circle_points(
    center: Vector, radius: float, n: int = 64, noise: float = 0.0, seed: int = 0
) -> np.ndarray:
    """(n, 2) array of points evenly spaced on a circle, with optional radial noise."""
    angles = np.linspace(0.0, 2 * np.pi, n, endpoint=False)
    radii = radius + np.random.default_rng(seed).normal(0.0, noise, n) if noise else radius
    return np.column_stack(
        [center[0] + radii * np.cos(angles), center[1] + radii * np.sin(angles)]
    )


@contextlib.contextmanager
def temporary_frame_directory(
    frames: Sequence[np.ndarray],
    name: str = "frame",
    extension: str = ".tif",
) -> Generator[tuple[list[pathlib.Path], pathlib.Path], None, None]:
    """Write frames to a temporary directory.

    Yields:
        (input file paths, an empty output directory)
    """
    with tempfile.TemporaryDirectory() as d:
        base_dir = pathlib.Path(d)
        input_dir = base_dir / "inputs"
        output_dir = base_dir / "outputs"
        input_dir.mkdir()
        output_dir.mkdir()
        paths = []
        for i, frame in enumerate(frames):
            path = input_dir / f"{name}_{i:03d}{extension}"
            if extension in (".fit", ".fits"):
                fits.PrimaryHDU(data=frame).writeto(path)
            else:
                tifffile.imwrite(path, frame)
            paths.append(path)
        yield paths, output_dir


def collect_events(events: queue.Queue) -> list:
    """Drain a queue of events without blocking."""
    collected = []
    while not events.empty():
        collected.append(events.get_nowait())
    return collected
