"""
Error kinds raised by the prediction pipeline and the shard layer.

Every kind carries the HTTP status the API layer renders it with, so route
handlers can let them propagate instead of translating each one.
"""


class DiabetifyError(Exception):
    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self):
        return {"status": "error", "error": self.kind, "message": self.message}


class ConfigError(DiabetifyError):
    kind = "ConfigError"


class ShardError(DiabetifyError):
    """A backend failed while executing a unit of work."""
    kind = "ShardError"

    def __init__(self, shard_name: str, message: str):
        super().__init__(f"{shard_name}: {message}")
        self.shard_name = shard_name


class IncompleteProfile(DiabetifyError):
    kind = "IncompleteProfile"
    status_code = 400


class QueueFull(DiabetifyError):
    kind = "QueueFull"
    status_code = 503


class BusUnavailable(DiabetifyError):
    kind = "BusUnavailable"
    status_code = 503


class WorkerNotRunning(DiabetifyError):
    kind = "WorkerNotRunning"
    status_code = 503


class JobTimeout(DiabetifyError):
    kind = "Timeout"
    status_code = 504


class ModelError(DiabetifyError):
    kind = "ModelError"
    status_code = 502


class NotFound(DiabetifyError):
    kind = "NotFound"
    status_code = 404


class Forbidden(DiabetifyError):
    kind = "Forbidden"
    status_code = 403


class CannotCancel(DiabetifyError):
    kind = "CannotCancel"
    status_code = 400


class InvalidTransition(DiabetifyError):
    kind = "InvalidTransition"
    status_code = 409


class TransportError(DiabetifyError):
    status_code = 503


class Transient(TransportError):
    """Bus-side failure the caller may retry (connection down, channel closed)."""
    kind = "Transient"


class Permanent(TransportError):
    """Request can never be delivered as-is (encoding or validation failure)."""
    kind = "Permanent"
    status_code = 500
