"""
CoordinationStore - per-repository coordination namespaces.

Each repository URL maps to a short, stable namespace id. The store binds the
claim registry, event log and agent state table to one backend:

    store = CoordinationStore.from_config()
    store.initialize("https://github.com/user/repo")
    store.claims.claim("https://github.com/user/repo", "agent-1", "src/main.py")
"""

import hashlib
import logging
from typing import Optional

from .backends import CoordinationBackend, MemoryBackend, create_backend
from .claims import ClaimRegistry
from .config import config as default_config
from .events import EventLog
from .state import AgentStateTable

logger = logging.getLogger(__name__)

NAMESPACE_LENGTH = 12


def resolve_namespace(repo_url: str) -> str:
    """First 12 hex chars of the SHA-256 of the repository URL."""
    return hashlib.sha256(repo_url.encode("utf-8")).hexdigest()[:NAMESPACE_LENGTH]


class CoordinationStore:
    """Entry point to the claims, events and agent state of every repository."""

    def __init__(self, backend: Optional[CoordinationBackend] = None, clock=None):
        self.backend = backend or MemoryBackend()
        self.events = EventLog(self, clock=clock)
        self.claims = ClaimRegistry(self, clock=clock)
        self.state = AgentStateTable(self, clock=clock)

    @classmethod
    def from_config(
        cls,
        config=None,
        backend: Optional[str] = None,
        home: Optional[str] = None,
        redis_url: Optional[str] = None,
    ) -> 'CoordinationStore':
        """Build a store from Config, with optional overrides."""
        config = config or default_config
        name = backend or config.AGENTBUS_BACKEND
        return cls(create_backend(
            name,
            home=home or config.AGENTBUS_HOME,
            redis_url=redis_url or config.REDIS_URL,
            lock_timeout=config.AGENTBUS_LOCK_TIMEOUT,
        ))

    @staticmethod
    def resolve_namespace(repo_url: str) -> str:
        return resolve_namespace(repo_url)

    def initialize(self, repo_url: str) -> str:
        """
        Create the namespace for repo_url if it does not exist yet.

        Safe to call repeatedly and from several processes at once; existing
        data is never overwritten. Storage errors propagate.
        """
        namespace = resolve_namespace(repo_url)
        self.backend.initialize(namespace)
        logger.debug(f"Coordination namespace for {repo_url}: {self.backend.describe(namespace)}")
        return namespace

    def location(self, repo_url: str) -> str:
        return self.backend.describe(resolve_namespace(repo_url))
