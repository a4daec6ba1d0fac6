"""Error kinds raised by the alignment stages.

Every stage raises one of these; the coordinator turns the first one raised
during a run into the run's single terminal event.
"""


class AlignmentError(Exception):
    """Base class for all fatal alignment failures."""


class InputError(AlignmentError):
    """An input frame could not be read, or the output directory is unusable."""


class DetectionError(AlignmentError):
    """The limb of the disc could not be found or fitted in some frame."""


class ConvergenceError(AlignmentError):
    """Stabilization did not converge within its iteration limit."""


class GeometryError(AlignmentError):
    """The planned output canvas is empty."""


class OutputError(AlignmentError):
    """An output frame could not be written."""


class UserAbort(AlignmentError):
    """Cancellation was requested and observed at a checkpoint."""

    def __init__(self, message: str = "Aborted per user request.") -> None:
        super().__init__(message)
