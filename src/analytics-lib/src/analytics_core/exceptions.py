"""
analytics_core.exceptions — Named, recoverable failures of the admin core.

Handlers translate these into structured ``{"error": ..., "code": ...}``
payloads; anything else is rendered as a generic 500.
"""


class AnalyticsError(Exception):
    """Base class for named admin-core failures.

    Attributes:
        code:        Stable machine-readable error code returned to callers.
        status_code: HTTP status used when the caller came through API Gateway.
    """

    code = "INTERNAL_ERROR"
    status_code = 500


class InvalidInvocation(AnalyticsError):
    """Raised when an event cannot be mapped onto an operation, or a required field is absent."""

    code = "BAD_REQUEST"
    status_code = 400


class NoSnapshotAvailable(AnalyticsError):
    """Raised by restore when the instance has no available manual snapshot."""

    code = "NO_SNAPSHOT_AVAILABLE"
    status_code = 409

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"No snapshots available for {instance_id!r}")


class ImportCursorMissing(AnalyticsError):
    """Raised when the import cursor parameter has never been initialised.

    Bootstrap it with ``scripts/import_cursor.py init``.
    """

    code = "IMPORT_CURSOR_MISSING"
    status_code = 412

    def __init__(self, parameter_name: str) -> None:
        self.parameter_name = parameter_name
        super().__init__(f"Import cursor parameter {parameter_name!r} is not initialised")


class InvalidRecord(AnalyticsError):
    """Raised when a staged chat-log record cannot be loaded as-is."""

    code = "INVALID_RECORD"
    status_code = 422

    def __init__(self, record_id: str, reason: str) -> None:
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Record {record_id!r} rejected: {reason}")


class UnknownRoute(InvalidInvocation):
    """Raised when an HTTP request targets a path the function does not serve."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Unknown path: {path}")
