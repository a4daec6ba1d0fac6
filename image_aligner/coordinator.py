"""Runs an alignment on a background worker and reports progress as events.

A coordinator owns one run at a time. The run is a fixed sequence of stages:

    Idle -> EstimatingOrDetecting -> Stabilizing (limb method only) -> Rendering
         -> Completed | Aborted

Every stage raises an `AlignmentError` on failure; the run loop turns the first
error into the run's single terminal event. Cancellation is cooperative: the
caller sets a flag with `abort()`, and the stages poll it at checkpoints (once
per frame, once per stabilization iteration, and between row blocks while
rendering).
"""
import contextlib
import enum
import logging
import queue
import threading
import time
from typing import Generator, Optional, Sequence

import numpy as np

from .errors import AlignmentError, ConvergenceError, GeometryError, InputError, UserAbort
from .events import (
    AbortReason,
    Aborted,
    AlignmentEvent,
    Completed,
    DiscRadiusChosen,
    DiscRadiusFound,
    OutputSaved,
    StabilizationFailed,
    StabilizationProgress,
    TranslationDetermined,
    TranslationsReady,
    is_terminal,
)
from .frame_source import FrameSource, create_frame_source
from .geometry import Rect, plan_canvas
from .parameters import (
    AlignmentMethod,
    AlignmentParameters,
    CropMode,
    ImageInputs,
    Interpolation,
)
from .registration import PhaseCorrelationEstimator, detect_limbs, stabilize, track_feature
from .registration._typing_utils import Vector
from .rendering import combine_channels, output_path, render_frame, save_frame, whole_pixels

logger = logging.getLogger(__name__)

NO_INPUTS_MESSAGE = "no input files specified for alignment"


@contextlib.contextmanager
def debug_timing(stage: str) -> Generator[None, None, None]:
    """Log the wall time spent in this context at debug level."""
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.debug(f"{stage}: {time.perf_counter() - start:0.3f}s")


class AlignmentState(enum.Enum):
    IDLE = "idle"
    ESTIMATING_OR_DETECTING = "estimating_or_detecting"
    STABILIZING = "stabilizing"
    RENDERING = "rendering"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AlignmentCoordinator:
    """Drives one alignment run at a time on a dedicated worker thread.

    Events are put on `events` in the order they are produced. The caller
    either reads the queue directly or iterates `iter_events()`, which ends
    after the run's terminal event.
    """

    def __init__(self, params: AlignmentParameters):
        self.params = params
        self.events: "queue.Queue[AlignmentEvent]" = queue.Queue()
        self.state = AlignmentState.IDLE
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._rgb = False

    @classmethod
    def for_rgb(
        cls,
        red: np.ndarray,
        green: np.ndarray,
        blue: np.ndarray,
        interpolation: Interpolation = Interpolation.bilinear,
    ) -> "AlignmentCoordinator":
        """Coordinator aligning three color channels to each other.

        The channels are aligned relative to their mean position and the run
        completes with the recombined (H, W, 3) image in `Completed.image`.
        """
        channels = (red, green, blue)
        if any(c.ndim != 2 for c in channels) or len({c.shape for c in channels}) != 1:
            raise ValueError(
                "RGB alignment needs three equally sized single channel images, "
                f"got {[c.shape for c in channels]}"
            )
        params = AlignmentParameters(
            inputs=ImageInputs(images=channels),
            method=AlignmentMethod.phase_correlation,
            subpixel_alignment=True,
            interpolation=interpolation,
        )
        coordinator = cls(params)
        coordinator._rgb = True
        return coordinator

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the run on a worker thread.

        Raises:
            RuntimeError: If a run is already in progress.
        """
        with self._start_lock:
            if self.is_running:
                raise RuntimeError("An alignment run is already in progress")
            self._cancel.clear()
            self._thread = threading.Thread(
                target=self.run, name="alignment-worker", daemon=True
            )
            self._thread.start()

    def abort(self) -> None:
        """Request cancellation; observed by the worker at its next checkpoint."""
        self._cancel.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def checkpoint(self) -> None:
        if self._cancel.is_set():
            raise UserAbort()

    def iter_events(self, timeout: Optional[float] = None) -> Generator[AlignmentEvent, None, None]:
        """Yield events as they arrive, ending after the terminal event.

        Raises:
            queue.Empty: If no event arrives within `timeout` seconds.
        """
        while True:
            event = self.events.get(timeout=timeout)
            yield event
            if is_terminal(event):
                return

    def _emit(self, event: AlignmentEvent) -> None:
        logger.debug(f"Event: {event!r}")
        self.events.put(event)

    def run(self) -> None:
        """Execute a run on the calling thread; the worker thread runs this."""
        self.state = AlignmentState.ESTIMATING_OR_DETECTING
        try:
            with debug_timing("Alignment"):
                result = self._run_pipeline()
        except UserAbort as e:
            logger.info("Alignment aborted per user request")
            self._finish_aborted(AbortReason.USER_REQUESTED, str(e))
        except ConvergenceError as e:
            logger.error(f"Stabilization failed: {e}")
            self._emit(StabilizationFailed(str(e)))
            self._finish_aborted(AbortReason.PROCESSING_ERROR, str(e))
        except AlignmentError as e:
            logger.error(f"Alignment failed: {e}")
            self._finish_aborted(AbortReason.PROCESSING_ERROR, str(e))
        except Exception as e:
            logger.exception("Unexpected error during alignment")
            self._finish_aborted(AbortReason.PROCESSING_ERROR, f"Unexpected error: {e}")
        else:
            self.state = AlignmentState.COMPLETED
            self._emit(result)

    def _finish_aborted(self, reason: AbortReason, message: str) -> None:
        self.state = AlignmentState.ABORTED
        self._emit(Aborted(reason, message))

    def _run_pipeline(self) -> Completed:
        params = self.params
        if params.num_inputs == 0:
            logger.warning("Nothing to align")
            return Completed(error_message=NO_INPUTS_MESSAGE)
        if not params.in_memory and (params.output_dir is None or not params.output_dir.is_dir()):
            raise InputError(f"Output directory does not exist: {params.output_dir}")

        source = create_frame_source(params)
        logger.info(f"Aligning {len(source)} frames using {params.method.value}")
        with debug_timing("Determining translations"):
            if params.method == AlignmentMethod.phase_correlation:
                translations = self._phase_correlation(source)
            elif params.method == AlignmentMethod.limb:
                translations = self._limb(source)
            else:
                raise RuntimeError(f"Unexpected AlignmentMethod value: {params.method}")

        if not params.subpixel_alignment:
            translations = [whole_pixels(t) for t in translations]
        self.checkpoint()

        if self._rgb:
            self._emit(TranslationsReady(tuple(translations)))
            return Completed(image=self._render_rgb(source, translations))
        if params.in_memory:
            self._emit(TranslationsReady(tuple(translations)))
            return Completed()

        with debug_timing("Rendering"):
            self._render_outputs(source, translations)
        self.checkpoint()
        return Completed()

    def _phase_correlation(self, source: FrameSource) -> list[Vector]:
        estimator = PhaseCorrelationEstimator(
            self.params.subpixel_alignment, self.params.phase_correlation
        )
        return estimator.estimate_sequence(
            source.load_mono,
            source.sizes(),
            on_translation=lambda i, t: self._emit(TranslationDetermined(i, t)),
            checkpoint=self.checkpoint,
        )

    def _limb(self, source: FrameSource) -> list[Vector]:
        detections = detect_limbs(
            source.load_mono8,
            len(source),
            self.params.limb_detection,
            on_detection=lambda i, d: self._emit(DiscRadiusFound(i, d.estimate.radius)),
            checkpoint=self.checkpoint,
            describe=source.describe,
        )

        settings = self.params.stabilization
        # With feature tracking the disc fit reports the first half of the progress.
        share = 0.5 if settings.track_features else 1.0

        self.state = AlignmentState.STABILIZING
        with debug_timing("Stabilization"):
            result = stabilize(
                detections,
                settings,
                on_radius_chosen=lambda r: self._emit(DiscRadiusChosen(r)),
                on_progress=lambda f: self._emit(StabilizationProgress(f * share)),
                checkpoint=self.checkpoint,
            )
        if not settings.track_features:
            return result.translations

        try:
            common_area = plan_canvas(
                source.sizes(), result.translations, CropMode.crop_to_intersection
            )
        except GeometryError:
            logger.warning("Frames do not overlap; skipping feature tracking")
            return result.translations
        with debug_timing("Feature tracking"):
            return track_feature(
                source.load_mono,
                result.translations,
                common_area,
                settings,
                on_progress=lambda f: self._emit(StabilizationProgress(share + f * share)),
                checkpoint=self.checkpoint,
            )

    def _render_outputs(self, source: FrameSource, translations: Sequence[Vector]) -> None:
        params = self.params
        canvas = plan_canvas(source.sizes(), translations, params.crop_mode)
        logger.info(
            f"Output canvas: {canvas.width}x{canvas.height} at ({canvas.x}, {canvas.y})"
        )

        self.state = AlignmentState.RENDERING
        for i, translation in enumerate(translations):
            self.checkpoint()
            rendered = render_frame(
                source.load(i),
                translation,
                canvas,
                params.interpolation.spline_order,
                self.checkpoint,
            )
            path = output_path(source.path(i), params.output_dir, params.output_filename_suffix)
            save_frame(rendered, path)
            self._emit(OutputSaved(i, str(path)))

    def _render_rgb(self, source: FrameSource, translations: Sequence[Vector]) -> np.ndarray:
        self.state = AlignmentState.RENDERING
        mean_x = float(np.mean([t[0] for t in translations]))
        mean_y = float(np.mean([t[1] for t in translations]))

        channels = []
        for i, (tx, ty) in enumerate(translations):
            self.checkpoint()
            width, height = source.size(i)
            channels.append(
                render_frame(
                    source.load(i),
                    (tx - mean_x, ty - mean_y),
                    Rect(0, 0, width, height),
                    self.params.interpolation.spline_order,
                    self.checkpoint,
                )
            )
            self._emit(OutputSaved(i))
        return combine_channels(*channels)


def align_rgb(
    red: np.ndarray,
    green: np.ndarray,
    blue: np.ndarray,
    interpolation: Interpolation = Interpolation.bilinear,
) -> np.ndarray:
    """Align three color channels on the calling thread and recombine them.

    Raises:
        AlignmentError: If the alignment fails.
    """
    coordinator = AlignmentCoordinator.for_rgb(red, green, blue, interpolation)
    coordinator.run()
    for event in coordinator.iter_events():
        if isinstance(event, Aborted):
            raise AlignmentError(event.message)
        if isinstance(event, Completed):
            return event.image
    raise RuntimeError("Alignment run ended without a terminal event")
