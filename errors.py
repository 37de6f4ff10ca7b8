"""Error taxonomy shared by the telemetry engines and the HTTP layer."""


class TelemetryError(Exception):
    """Base class for every error raised by the telemetry core."""


class ValidationError(TelemetryError, ValueError):
    """Raised when an incoming activity or query parameter is malformed.

    Rejected events are never stored.
    """


class StorageError(TelemetryError):
    """Raised when the event store cannot be reached or a write fails.

    No local state is mutated when this is raised on the ingest path.
    """


class AggregationError(TelemetryError):
    """Raised for a single corrupt or unreadable historical event."""

    def __init__(self, message: str, event_id: str | None = None):
        super().__init__(message)
        self.event_id = event_id


class RuleEvaluationError(TelemetryError):
    """Wraps an exception thrown by one insight or recommendation rule."""

    def __init__(self, rule_id: str, cause: BaseException):
        super().__init__(f"rule {rule_id} failed: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class OperationCancelled(TelemetryError):
    """Raised when a long running computation observes a cancelled token."""
