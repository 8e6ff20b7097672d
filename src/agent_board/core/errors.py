"""Errors raised by task lifecycle operations."""


class LifecycleError(Exception):
    """Base class for task lifecycle failures."""


class NotFoundError(LifecycleError):
    """Raised when a task, run or external run id cannot be found."""


class ConflictError(LifecycleError):
    """Raised when a task already has an active run of the requested type."""


class InvalidTransitionError(LifecycleError):
    """Raised when a status change is not allowed from the task's current state."""


class MissingRepositoryError(LifecycleError):
    """Raised when an implementation run is requested without a linked repository."""


class RunnerUnavailableError(LifecycleError):
    """Raised when the agent runner could not accept a run.

    The run is already recorded as failed when this is raised, so the
    request can be retried by calling the same operation again.
    """

    def __init__(self, message: str, run_id: int | None = None):
        super().__init__(message)
        self.run_id = run_id
