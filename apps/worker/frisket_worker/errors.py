"""Processing error type and the stable failure codes operators alert on."""

from dataclasses import dataclass

SOURCE_NOT_FOUND = 404
SCRATCH_SETUP = 409
UNEXPECTED = 500

ARCHIVE_NOT_GZIP = 530
ARCHIVE_UNKNOWN_ENTRY = 531
ARCHIVE_MALFORMED = 532
ARCHIVE_WRITE = 533
ARCHIVE_CHMOD = 534

CONVERT_OPEN_INPUT = 540
CONVERT_CREATE_OUTPUT = 541
CONVERT_LINK_PDF = 542
CONVERT_NORMALIZE = 543

STITCH_FAILED = 550
PUBLISH_FAILED = 560


@dataclass
class ProcessingError(Exception):
    """Raised when a job stage fails; carries a numeric code for the error bucket."""

    message: str
    code: int

    def __post_init__(self) -> None:
        """Initialize the base exception with the message."""
        super().__init__(self.message)
