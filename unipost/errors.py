"""Exception types raised by the Uni-post storage core."""

from typing import Any, List, Optional


class UniPostError(Exception):
    """Base class for all storage core errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFoundError(UniPostError):
    """A document or entity is absent from the store."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class ConflictError(UniPostError):
    """The stored revision differs from the revision the writer believed current."""

    def __init__(self, message: str, path: Optional[str] = None, attempts: int = 1):
        self.path = path
        self.attempts = attempts
        super().__init__(message)


class AlreadyExistsError(ConflictError):
    """A create targeted a key that is already taken."""


class ValidationError(UniPostError):
    """Malformed input. Never retried."""


class PermissionDeniedError(UniPostError):
    """The acting user lacks the role required for the operation."""


class ParentNotFoundOrTooDeepError(NotFoundError):
    """Comment insertion target is missing or sits deeper than the nesting limit."""


class PartialWriteDriftError(UniPostError):
    """
    A multi-document operation committed some steps and then failed.

    The committed steps are not rolled back. Secondary references are left stale
    for the retention sweep or an out-of-band repair to reconcile.
    """

    def __init__(
        self,
        operation: str,
        completed_steps: List[str],
        failed_step: str,
        result: Any = None,
        cause: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step
        self.result = result
        self.cause = cause
        super().__init__(
            f"{operation}: step '{failed_step}' failed after "
            f"{', '.join(completed_steps) or 'no steps'} committed: {cause}"
        )
