"""Type aliases shared by the registration kernels.

Frames are 2D numpy arrays indexed (y, x); translations and points are
(x, y) pairs in pixel units.
"""
from typing import Any, Tuple

import numpy as np
import numpy.typing as npt

# Array type aliases
NumArray = npt.NDArray[Any]
FloatArray = npt.NDArray[np.float64]
IntArray = npt.NDArray[np.int_]

# An (x, y) translation or point
Vector = Tuple[float, float]
# A (width, height) frame size
Size = Tuple[int, int]
