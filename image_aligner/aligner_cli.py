import logging
import signal
import sys
from typing import Optional

from pydantic_settings import CliApp
from tqdm import tqdm

from image_aligner.coordinator import AlignmentCoordinator
from image_aligner.events import AbortReason, AlignmentEvent, Completed, ProgressCallbacks
from image_aligner.parameters import AlignmentCliParameters

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 130


def _exit_code(event: Optional[AlignmentEvent]) -> int:
    if isinstance(event, Completed):
        if event.succeeded:
            return EXIT_OK
        logging.error(event.error_message)
        return EXIT_FAILED
    if event is not None and event.reason == AbortReason.USER_REQUESTED:
        logging.warning(event.message)
        return EXIT_ABORTED
    if event is not None:
        logging.error(event.message)
    return EXIT_FAILED


def main(args: Optional[list[str]] = None) -> int:
    if args is None:
        args = sys.argv[1:]
    cli_params = CliApp.run(AlignmentCliParameters, cli_args=args)
    log_level = logging.DEBUG if cli_params.verbose else logging.INFO
    logging.basicConfig(level=log_level)

    params = cli_params.to_alignment_parameters()
    coordinator = AlignmentCoordinator(params)

    # Every frame is counted once when its translation or disc is found, once when saved.
    progress = tqdm(total=2 * params.num_inputs, unit="frame", desc="Aligning")

    def frame_done(*_args) -> None:
        progress.update(1)

    callbacks = ProgressCallbacks.no_op()
    callbacks.translation_determined = frame_done
    callbacks.disc_radius_found = frame_done
    callbacks.disc_radius_chosen = lambda r: progress.write(f"Disc radius: {r:.2f} px")
    callbacks.stabilization_progress = lambda f: progress.set_postfix(stabilization=f"{f:.0%}")
    callbacks.stabilization_failed = lambda m: progress.write(f"Stabilization failed: {m}")
    callbacks.output_saved = frame_done

    previous_handler = signal.signal(signal.SIGINT, lambda _sig, _frame: coordinator.abort())
    terminal = None
    try:
        coordinator.start()
        for event in coordinator.iter_events():
            callbacks.dispatch(event)
            terminal = event
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        progress.close()
        coordinator.join()

    return _exit_code(terminal)


if __name__ == "__main__":
    sys.exit(main())
