class GradeEngineError(Exception):
    """Base class for grade engine errors."""


class ValidationError(GradeEngineError):
    """Raised when input is malformed (grade out of range, empty commission, incomplete rubric)."""


class PreconditionError(GradeEngineError):
    """Raised when a lifecycle transition is not allowed in the current state."""


class NotFoundError(GradeEngineError):
    """Raised when a referenced resident, subject, teacher or acta does not exist."""


class StoreError(GradeEngineError):
    """Raised when the underlying persistence layer fails."""
