"""Events sent from an alignment run to its caller.

A run communicates only through these immutable messages. They are put on a
queue by the worker and consumed by the caller in the order they were
produced; the last event of every run is either `Completed` or `Aborted`.
"""
import enum
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import numpy as np

from .registration._typing_utils import Vector


class AbortReason(enum.Enum):
    USER_REQUESTED = "user_requested"
    PROCESSING_ERROR = "processing_error"


@dataclass(frozen=True)
class TranslationDetermined:
    """Phase correlation: translation of an image relative to the first one."""

    image_index: int
    translation: Vector


@dataclass(frozen=True)
class DiscRadiusFound:
    """Limb method: the disc was found in an image."""

    image_index: int
    radius: float


@dataclass(frozen=True)
class DiscRadiusChosen:
    """Limb method: the consensus radius used for stabilization."""

    radius: float


@dataclass(frozen=True)
class StabilizationProgress:
    fraction: float


@dataclass(frozen=True)
class StabilizationFailed:
    message: str


@dataclass(frozen=True)
class OutputSaved:
    """An output frame was produced; `path` is None for in-memory output."""

    image_index: int
    path: Optional[str] = None


@dataclass(frozen=True)
class TranslationsReady:
    """Sent before `Completed` when the inputs were in-memory images."""

    translations: tuple[Vector, ...]


@dataclass(frozen=True)
class Completed:
    """The run finished. An empty `error_message` means success.

    `image` carries the recombined image of an RGB alignment.
    """

    error_message: str = ""
    image: Optional[np.ndarray] = field(default=None, compare=False)

    @property
    def succeeded(self) -> bool:
        return not self.error_message


@dataclass(frozen=True)
class Aborted:
    reason: AbortReason
    message: str


AlignmentEvent = Union[
    TranslationDetermined,
    DiscRadiusFound,
    DiscRadiusChosen,
    StabilizationProgress,
    StabilizationFailed,
    OutputSaved,
    TranslationsReady,
    Completed,
    Aborted,
]


def is_terminal(event: AlignmentEvent) -> bool:
    return isinstance(event, (Completed, Aborted))


@dataclass
class ProgressCallbacks:
    """Callback set for callers that prefer functions over consuming events."""

    translation_determined: Callable[[int, Vector], None]
    disc_radius_found: Callable[[int, float], None]
    disc_radius_chosen: Callable[[float], None]
    stabilization_progress: Callable[[float], None]
    stabilization_failed: Callable[[str], None]
    output_saved: Callable[[int, Optional[str]], None]
    translations_ready: Callable[[tuple[Vector, ...]], None]
    completed: Callable[[Completed], None]
    aborted: Callable[[AbortReason, str], None]

    @classmethod
    def no_op(cls):
        return cls(
            translation_determined=lambda _i, _t: None,
            disc_radius_found=lambda _i, _r: None,
            disc_radius_chosen=lambda _r: None,
            stabilization_progress=lambda _f: None,
            stabilization_failed=lambda _m: None,
            output_saved=lambda _i, _p: None,
            translations_ready=lambda _t: None,
            completed=lambda _c: None,
            aborted=lambda _r, _m: None,
        )

    def dispatch(self, event: AlignmentEvent) -> None:
        if isinstance(event, TranslationDetermined):
            self.translation_determined(event.image_index, event.translation)
        elif isinstance(event, DiscRadiusFound):
            self.disc_radius_found(event.image_index, event.radius)
        elif isinstance(event, DiscRadiusChosen):
            self.disc_radius_chosen(event.radius)
        elif isinstance(event, StabilizationProgress):
            self.stabilization_progress(event.fraction)
        elif isinstance(event, StabilizationFailed):
            self.stabilization_failed(event.message)
        elif isinstance(event, OutputSaved):
            self.output_saved(event.image_index, event.path)
        elif isinstance(event, TranslationsReady):
            self.translations_ready(event.translations)
        elif isinstance(event, Completed):
            self.completed(event)
        elif isinstance(event, Aborted):
            self.aborted(event.reason, event.message)
        else:
            raise RuntimeError(f"Unexpected event: {event!r}")
