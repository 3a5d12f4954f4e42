"""Exception hierarchy for the conversion queue.

None of these are raised to task submitters. The queue manager catches them
at the job boundary and turns them into log records and "failed"
notifications.
"""


class ConversionError(Exception):
    """Base class for all job-level failures."""

    #: Short machine-readable reason, included in failed notifications
    reason = "conversion_error"


class InputNotFound(ConversionError):
    """The resolved input location does not exist."""

    reason = "input_not_found"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"input not found: {path}")


class UnknownFormat(ConversionError):
    """Task format is not a catalog key (only raised with strict_formats)."""

    reason = "unknown_format"

    def __init__(self, format_id: str):
        self.format_id = format_id
        super().__init__(f"unknown format: {format_id}")


class InvalidTask(ConversionError):
    """A submitted mapping could not be validated into a ConversionTask."""

    reason = "invalid_task"


class MetadataExtractionFailure(ConversionError):
    """ffprobe failed or returned unusable output."""

    reason = "metadata_extraction_failed"


class EngineError(ConversionError):
    """The transcoding engine reported an error signal."""

    reason = "engine_error"


class UnexpectedResolutionError(ConversionError):
    """Any other exception raised while preparing a job."""

    reason = "unexpected_resolution_error"


class NotificationError(Exception):
    """Delivery of a lifecycle event failed. Never reaches the queue."""
