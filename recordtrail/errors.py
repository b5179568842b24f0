"""Exception and warning types raised by the engine."""


class RecordTrailError(Exception):
    """Base class for engine errors."""


class ConfigurationError(RecordTrailError):
    """Tracking options are invalid. Raised at setup time."""


class WriteFailure(RecordTrailError):
    """The store rejected a version write."""

    def __init__(self, event: str, item_type: str, item_id, cause: Exception):
        self.event = event
        self.item_type = item_type
        self.item_id = item_id
        self.cause = cause
        super().__init__(f"Could not record {event} version for {item_type} {item_id}: {cause}")


class InvalidRecordingOrder(UserWarning):
    """Destroy recording order is not supported for a model; 'before' is used instead."""
