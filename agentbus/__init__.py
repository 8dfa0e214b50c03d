"""
AgentBus - shared coordination for coding agents working on one repository

Provides coordination primitives for several agent processes editing the same
repository, plus a retry loop that drives one agent to completion:
- Exclusive file claims with conflict detection
- Append-only event log with per-agent relevance filtering
- Shared agent status table
- File, Redis or in-memory storage
- Bounded retry controller that reacts to rebase signals

Usage:
    from agentbus import CoordinationStore

    store = CoordinationStore.from_config()
    store.initialize("https://github.com/user/repo")
    store.claims.claim("https://github.com/user/repo", "agent-1", "src/main.py")
    store.events.publish("https://github.com/user/repo", "pushed", "agent-1")
"""

from .backends import CoordinationBackend, FileBackend, MemoryBackend, RedisBackend
from .claims import Claim, ClaimRegistry
from .events import Event, EventLog, EventType, Relevance
from .exceptions import (
    AgentBusError,
    ConflictError,
    ExecutorError,
    ForbiddenError,
    MaxAttemptsExceeded,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .namespace import CoordinationStore, resolve_namespace
from .state import AgentState, AgentStateTable, AgentStatus, StateSnapshot
from .supervisor import RetryController, TaskResult

__version__ = "0.1.0"
__all__ = [
    "CoordinationBackend",
    "FileBackend",
    "MemoryBackend",
    "RedisBackend",
    "Claim",
    "ClaimRegistry",
    "Event",
    "EventLog",
    "EventType",
    "Relevance",
    "AgentBusError",
    "ConflictError",
    "ExecutorError",
    "ForbiddenError",
    "MaxAttemptsExceeded",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "CoordinationStore",
    "resolve_namespace",
    "AgentState",
    "AgentStateTable",
    "AgentStatus",
    "StateSnapshot",
    "RetryController",
    "TaskResult",
]
