"""
Typed errors raised by the draw engine.
"""


class DrawEngineError(Exception):
    """Base exception for all draw engine errors."""
    pass


class NotFoundError(DrawEngineError):
    """Raised when a tournament, group, match or document does not exist."""
    pass


class ValidationError(DrawEngineError):
    """Raised when the input to an operation is not acceptable."""
    pass


class ConflictError(DrawEngineError):
    """Raised when generated data already exists and must be reset first."""
    pass


class StoreError(DrawEngineError):
    """Raised when a store call fails."""
    pass


class PartialFailureError(DrawEngineError):
    """Raised when a multi-step operation fails after some writes were made.

    Nothing is rolled back. The affected tournament has to be reset and
    regenerated.
    """
    def __init__(self, operation: str, completed_steps: int, cause: Exception = None):
        self.operation = operation
        self.completed_steps = completed_steps
        self.cause = cause
        msg = f"{operation} failed after {completed_steps} completed step(s)"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class WriteSequence:
    """Count the writes of a multi-step operation.

    A StoreError raised inside the block is re-raised as PartialFailureError
    once at least one write has been recorded.
    """
    def __init__(self, operation: str):
        self.operation = operation
        self.completed = 0

    def step(self, count: int = 1):
        self.completed += count

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None and issubclass(exc_type, StoreError) and self.completed:
            raise PartialFailureError(self.operation, self.completed, exc) from exc
        return False
