"""
Domain errors raised by the pipeline and deal services.

The API layer maps each kind to an HTTP status; services never deal with
status codes themselves.
"""


class EngineError(Exception):
    """Base class for all per-operation failures of the engine."""
    code = "engine_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(EngineError):
    """Raised when a pipeline, stage or deal does not exist."""
    code = "not_found"

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(f"{resource} not found")


class ValidationError(EngineError):
    """Raised when a move or a pipeline edit breaks a business rule."""
    code = "validation_error"


class ConflictError(EngineError):
    """Raised when a concurrent write wins over ours, or an edit clashes with existing data."""
    code = "conflict"
