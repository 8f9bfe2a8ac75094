"""Error taxonomy for the guard.

Every error carries a full-sentence message because the primary consumer
is an agent that has to self-correct from the text alone. When there is
an obvious next step, it goes in ``hint`` (usually a command to run).

- ValidationError: bad name, unknown role, empty field
- ConflictError: already claimed, lock busy, self-review, pending inbox
- NotFoundError: no config, no session, unknown agent
- LockIOError: the lock marker could not be created for a reason other
  than contention
"""


class GuardError(Exception):
    """Base class for all guard errors."""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\n{self.hint}"
        return self.message


class ValidationError(GuardError):
    """Input was malformed or outside the allowed set."""


class NotFoundError(GuardError):
    """A config file, session, or agent could not be found."""


class ConflictError(GuardError):
    """The operation collides with existing state."""


class AlreadyClaimedError(ConflictError):
    """The agent is held by a different session."""


class LockBusyError(ConflictError):
    """Another live process holds the agent's claim lock."""


class SelfReviewError(ConflictError):
    """An agent tried to review a task it wrote code for."""


class InboxNotEmptyError(ConflictError):
    """Release was attempted with unprocessed inbox items."""

    def __init__(self, message: str, count: int, hint: str | None = None):
        super().__init__(message, hint)
        self.count = count


class LockIOError(GuardError):
    """The lock marker could not be written."""
