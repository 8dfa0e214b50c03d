"""Shared agent status table. The latest write for an agent wins."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Union

from .exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    WORKING = "working"
    IDLE = "idle"
    DONE = "done"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class AgentState:
    name: str
    status: AgentStatus
    last_update: datetime
    branch: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "branch": self.branch,
            "status": self.status.value,
            "last_update": self.last_update.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentState':
        last_update = datetime.fromisoformat(data["last_update"])
        if last_update.tzinfo is None:
            last_update = last_update.replace(tzinfo=timezone.utc)
        return cls(
            name=data["name"],
            status=AgentStatus(data["status"]),
            last_update=last_update,
            branch=data.get("branch") or "",
        )


@dataclass
class StateSnapshot:
    """Every agent's state plus the namespace-wide last-updated marker."""
    agents: Dict[str, AgentState] = field(default_factory=dict)
    last_updated: str = ""


class AgentStateTable:
    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def update(
        self,
        repo_url: str,
        agent: str,
        status: Union[str, AgentStatus],
        branch: str = "",
    ) -> AgentState:
        """Overwrite agent's record with status and branch."""
        if not agent:
            raise ValidationError("agent name cannot be empty")
        try:
            status = AgentStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in AgentStatus)
            raise ValidationError(f"unknown status {status!r} (expected one of {valid})") from None

        now = self.clock()
        record = AgentState(name=agent, status=status, last_update=now, branch=branch or "")

        def put(state: Dict[str, Any]) -> None:
            state["agents"][agent] = record.to_dict()
            state["last_updated"] = now.isoformat()

        namespace = self.store.resolve_namespace(repo_url)
        self.store.backend.mutate_state(namespace, put)
        logger.info(f"Agent {agent} is {status.value}")
        return record

    def remove(self, repo_url: str, agent: str) -> bool:
        """Delete agent's record. Returns False if there was none."""
        now = self.clock()

        def drop(state: Dict[str, Any]) -> bool:
            if agent not in state["agents"]:
                return False
            del state["agents"][agent]
            state["last_updated"] = now.isoformat()
            return True

        namespace = self.store.resolve_namespace(repo_url)
        removed = self.store.backend.mutate_state(namespace, drop)
        if removed:
            logger.info(f"Removed state for {agent}")
        return removed

    def get(self, repo_url: str) -> StateSnapshot:
        namespace = self.store.resolve_namespace(repo_url)
        raw = self.store.backend.load_state(namespace)
        agents = {}
        for name, data in raw["agents"].items():
            try:
                agents[name] = AgentState.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed state for {name}: {e}")
        return StateSnapshot(agents=agents, last_updated=raw.get("last_updated") or "")

    def get_agent(self, repo_url: str, agent: str) -> AgentState:
        try:
            return self.get(repo_url).agents[agent]
        except KeyError:
            raise NotFoundError(agent, kind="agent state") from None
