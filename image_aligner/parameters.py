import enum
import os
import pathlib
from typing import Annotated, Literal, Optional, Union

import numpy as np
from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class AlignmentMethod(enum.Enum):
    phase_correlation = "phase_correlation"
    limb = "limb"


class CropMode(enum.Enum):
    crop_to_intersection = "crop_to_intersection"
    pad_to_bounding_box = "pad_to_bounding_box"


class Interpolation(enum.Enum):
    bilinear = "bilinear"
    bicubic = "bicubic"

    @property
    def spline_order(self) -> int:
        return 1 if self == Interpolation.bilinear else 3


def input_path_exists(path: pathlib.Path) -> pathlib.Path:
    """Pydantic validator to check an input file exists."""
    if not os.path.exists(path):
        raise ValueError(f"Input file does not exist: {path}")

    return path


class PhaseCorrelationSettings(BaseModel, use_attribute_docstrings=True):
    """Tuning of the phase correlation translation estimator."""

    model_config = ConfigDict(frozen=True)

    subpixel_refinement: Literal["parabolic", "foroosh"] = "parabolic"
    """Formula used to refine the correlation peak to sub-pixel precision.

    "parabolic" fits a parabola through the peak and its two neighbors along
    each axis; "foroosh" uses the closed form from Foroosh, Zerubia & Berthod,
    "Extension of Phase Correlation to Subpixel Registration".
    """

    apply_window: bool = True
    """Multiply frames by a Blackman window before the FFT.

    Without it, frame borders produce strong false correlation peaks.
    """


class LimbDetectionSettings(BaseModel, use_attribute_docstrings=True):
    """Tuning of the disc limb detector."""

    model_config = ConfigDict(frozen=True)

    num_rays: int = Field(64, ge=8)
    """Number of rays cast from the disc centroid towards the image border."""

    diff_size: int = Field(5, ge=1)
    """Length of the pixel windows compared when measuring edge steepness."""

    border_average: int = Field(16, ge=0)
    """Pixels at both ends of a ray replaced by their mean (hides bright sharpening borders)."""

    skip_border: int = Field(6, ge=0)
    """Pixels skipped at the outer end of a ray when searching for the disc."""

    back_offset: int = Field(20, ge=0)
    """Minimum inward back-off from the outermost above-threshold pixel before scanning."""

    steepness_divisor: float = Field(3.0, gt=0)
    """Edge points less steep than expected_steepness / steepness_divisor are discarded."""

    max_above_threshold_fraction: float = Field(0.6, gt=0, le=1)
    """Max fraction of above-threshold neighbors acceptable for a limb point."""

    min_points: int = Field(8, ge=3)
    """Minimum number of accepted limb points required for a circle fit."""

    max_fit_residual: float = Field(2.0, gt=0)
    """Max RMS distance (pixels) of limb points from the fitted circle."""


class StabilizationSettings(BaseModel, use_attribute_docstrings=True):
    """Tuning of the sequence-wide limb stabilization."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(50, ge=1)
    """Refinement iterations before stabilization is reported as failed."""

    tolerance: float = Field(1e-3, gt=0)
    """Convergence threshold (pixels) on the largest per-iteration change."""

    max_radius_ratio: float = Field(1.5, gt=1)
    """Largest acceptable ratio of the biggest to the smallest fitted radius."""

    track_features: bool = False
    """Afterwards track the highest-contrast area (e.g. a sunspot) through the frames
    and smooth its motion along a circular arc, removing the remaining jitter."""

    feature_area_size: int = Field(128, ge=16)
    """Side (pixels) of the square area tracked by `track_features`."""

    feature_blur_sigma: float = Field(1.0, gt=0)
    """Gaussian blur applied to the frames before looking for and tracking the area."""


class PathInputs(BaseModel):
    """Input frames given as files, loaded on demand."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["paths"] = "paths"
    paths: list[Annotated[pathlib.Path, AfterValidator(input_path_exists)]]

    def __len__(self) -> int:
        return len(self.paths)


class ImageInputs(BaseModel):
    """Already decoded frames, shared read-only with the caller."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["images"] = "images"
    images: tuple[np.ndarray, ...]

    @field_validator("images")
    @classmethod
    def read_only_views(cls, images: tuple[np.ndarray, ...]) -> tuple[np.ndarray, ...]:
        views = []
        for image in images:
            if image.ndim not in (2, 3):
                raise ValueError(f"Unexpected image shape: {image.shape}")
            view = image.view()
            view.flags.writeable = False
            views.append(view)
        return tuple(views)

    def __len__(self) -> int:
        return len(self.images)


AlignmentInputs = Annotated[Union[PathInputs, ImageInputs], Field(discriminator="kind")]


class AlignmentParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Parameters of a single alignment run. Immutable once constructed."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    inputs: AlignmentInputs
    """The frames to align; frame 0 is the reference."""

    method: AlignmentMethod = AlignmentMethod.phase_correlation
    """How translations are determined."""

    subpixel_alignment: bool = True
    """Determine and apply translations with sub-pixel precision."""

    crop_mode: CropMode = CropMode.crop_to_intersection
    """How the common output canvas is sized.

    crop_to_intersection keeps only the area covered by every frame;
    pad_to_bounding_box keeps everything, padding with zeros.
    """

    output_dir: Optional[pathlib.Path] = None
    """Directory receiving the aligned frames. Required for file inputs."""

    output_filename_suffix: Optional[str] = None
    """Appended to each input's base name when naming its output file."""

    normalize_on_load: bool = False
    """Scale floating point FITS pixel values to [0, 1] when loading."""

    interpolation: Interpolation = Interpolation.bilinear
    """Resampling used for fractional translations."""

    phase_correlation: PhaseCorrelationSettings = PhaseCorrelationSettings()
    limb_detection: LimbDetectionSettings = LimbDetectionSettings()
    stabilization: StabilizationSettings = StabilizationSettings()

    @model_validator(mode="after")
    def file_inputs_need_output_dir(self) -> "AlignmentParameters":
        if isinstance(self.inputs, PathInputs) and self.inputs.paths and self.output_dir is None:
            raise ValueError("output_dir is required when aligning files")
        return self

    @property
    def num_inputs(self) -> int:
        return len(self.inputs)

    @property
    def in_memory(self) -> bool:
        return isinstance(self.inputs, ImageInputs)

    @classmethod
    def from_json_file(cls, json_path: str) -> "AlignmentParameters":
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            AlignmentParameters: New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        In-memory image inputs cannot be serialized.

        Args:
            json_path: Path where JSON file should be saved
        """
        if self.in_memory:
            raise ValueError("Parameters with in-memory image inputs cannot be saved")
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))


class AlignmentCliParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Align a sequence of image files and save the aligned frames."""

    input_files: list[str]
    """Image files to align, in sequence order. The first one is the reference."""

    output_dir: str
    """Existing directory to save the aligned frames to."""

    method: AlignmentMethod = AlignmentMethod.phase_correlation
    """Alignment method."""

    subpixel_alignment: bool = True
    """Determine and apply translations with sub-pixel precision."""

    crop_mode: CropMode = CropMode.crop_to_intersection
    """Output canvas sizing."""

    output_filename_suffix: Optional[str] = None
    """Appended to the output file names."""

    normalize_on_load: bool = False
    """Scale floating point FITS pixel values to [0, 1] when loading."""

    interpolation: Interpolation = Interpolation.bilinear
    """Resampling used for fractional translations."""

    track_features: bool = False
    """With the limb method, refine the alignment by tracking a high-contrast feature."""

    verbose: bool = False
    """Show debug-level logging."""

    def to_alignment_parameters(self) -> AlignmentParameters:
        return AlignmentParameters(
            inputs=PathInputs(paths=[pathlib.Path(p) for p in self.input_files]),
            method=self.method,
            subpixel_alignment=self.subpixel_alignment,
            crop_mode=self.crop_mode,
            output_dir=pathlib.Path(self.output_dir),
            output_filename_suffix=self.output_filename_suffix,
            normalize_on_load=self.normalize_on_load,
            interpolation=self.interpolation,
            stabilization=StabilizationSettings(track_features=self.track_features),
        )
