"""Custom exceptions for AgentBus."""

from datetime import datetime
from typing import Optional


class AgentBusError(Exception):
    """Base exception for AgentBus."""
    pass


class ValidationError(AgentBusError):
    """Input validation failed."""
    pass


class StorageError(AgentBusError):
    """Coordination store could not be read or written."""
    pass


class ConflictError(AgentBusError):
    """A path is already claimed by another agent."""

    def __init__(self, path: str, held_by: str, since: datetime):
        self.path = path
        self.held_by = held_by
        self.since = since
        super().__init__(
            f"file {path} already claimed by agent {held_by} (since {since.isoformat()})"
        )


class ForbiddenError(AgentBusError):
    """An agent tried to release a claim it does not hold."""

    def __init__(self, path: str, held_by: str, agent: str):
        self.path = path
        self.held_by = held_by
        self.agent = agent
        super().__init__(f"file {path} is claimed by agent {held_by}, not {agent}")


class NotFoundError(AgentBusError):
    """Unknown agent or record."""

    def __init__(self, name: str, kind: str = "agent"):
        self.name = name
        self.kind = kind
        super().__init__(f"{kind} not found: {name}")


class ExecutorError(AgentBusError):
    """The external task executor failed."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        self.returncode = returncode
        super().__init__(message)


class MaxAttemptsExceeded(AgentBusError):
    """Retry loop ran out of attempts before the task was done."""

    def __init__(self, attempts: int, last_status=None, result=None):
        self.attempts = attempts
        self.last_status = last_status
        self.result = result
        detail = ""
        if last_status is not None:
            detail = (
                f" (tests={last_status.test_status.value}, "
                f"uncommitted={last_status.has_uncommitted_changes})"
            )
        super().__init__(f"task not completed after {attempts} attempts{detail}")
