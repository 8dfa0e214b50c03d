"""
Append-only coordination event log.

Events are stored one JSON object per line. Each event kind carries a
relevance policy that decides which agents should see it:

- AUTHOR: only the agent that published it (claim, release, committed, pr_created)
- BROADCAST: every agent on the repository (pushed, merged)
- TARGETED: the agent named in data["target"], or everyone when no target is set
  (rebase_needed)
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from .exceptions import ValidationError

logger = logging.getLogger(__name__)


class Relevance(str, Enum):
    AUTHOR = "author"
    BROADCAST = "broadcast"
    TARGETED = "targeted"


class EventType(str, Enum):
    CLAIM = "claim"
    RELEASE = "release"
    COMMITTED = "committed"
    PUSHED = "pushed"
    PR_CREATED = "pr_created"
    MERGED = "merged"
    REBASE_NEEDED = "rebase_needed"

    @property
    def relevance(self) -> Relevance:
        return _RELEVANCE.get(self, Relevance.AUTHOR)

    @classmethod
    def parse(cls, value: Union[str, "EventType"]) -> "EventType":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValidationError(f"unknown event type {value!r} (expected one of {valid})") from None


_RELEVANCE = {
    EventType.PUSHED: Relevance.BROADCAST,
    EventType.MERGED: Relevance.BROADCAST,
    EventType.REBASE_NEEDED: Relevance.TARGETED,
}


@dataclass(frozen=True)
class Event:
    """A single coordination event."""
    type: EventType
    agent: str
    timestamp: datetime
    data: Dict[str, str] = field(default_factory=dict)

    @property
    def target(self) -> Optional[str]:
        return self.data.get("target")

    def is_relevant_to(self, agent: str) -> bool:
        """True if agent should see this event."""
        if self.agent == agent:
            return True
        relevance = self.type.relevance
        if relevance is Relevance.BROADCAST:
            return True
        if relevance is Relevance.TARGETED:
            return self.addresses(agent)
        return False

    def addresses(self, agent: str) -> bool:
        """True if the event is untargeted or targeted at agent."""
        return "target" not in self.data or self.data["target"] == agent

    def is_rebase_signal_for(self, agent: str) -> bool:
        return self.type is EventType.REBASE_NEEDED and self.addresses(agent)

    def to_json(self) -> str:
        payload = {
            "type": self.type.value,
            "agent": self.agent,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.data:
            payload["data"] = dict(self.data)
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def from_json(cls, line: str) -> "Event":
        """Parse one stored line. Raises ValueError on malformed input."""
        payload = json.loads(line)
        if not isinstance(payload, dict):
            raise ValueError("event record is not an object")
        try:
            event_type = EventType(payload["type"])
            agent = str(payload["agent"])
            timestamp = datetime.fromisoformat(payload["timestamp"])
        except (KeyError, TypeError) as e:
            raise ValueError(f"incomplete event record: {e}") from e
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("event data is not an object")
        return cls(
            type=event_type,
            agent=agent,
            timestamp=timestamp,
            data={str(k): str(v) for k, v in data.items()},
        )


class EventLog:
    """Append-only event log of a coordination namespace."""

    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def publish(
        self,
        repo_url: str,
        event_type: Union[str, EventType],
        agent: str,
        data: Optional[Dict[str, str]] = None,
    ) -> Event:
        """Append an event. The timestamp is always assigned here."""
        if not agent:
            raise ValidationError("agent name cannot be empty")
        event = Event(
            type=EventType.parse(event_type),
            agent=agent,
            timestamp=self.clock(),
            data={str(k): str(v) for k, v in (data or {}).items()},
        )
        namespace = self.store.resolve_namespace(repo_url)
        self.store.backend.append_event(namespace, event.to_json())
        logger.info(f"Published {event.type.value} from {agent}")
        return event

    def read_all(self, repo_url: str) -> List[Event]:
        """All events in append order, skipping unreadable records."""
        namespace = self.store.resolve_namespace(repo_url)
        events = []
        for number, line in enumerate(self.store.backend.read_event_lines(namespace), 1):
            if not line.strip():
                continue
            try:
                events.append(Event.from_json(line))
            except ValueError as e:
                logger.debug(f"Skipping malformed event record {number} in {namespace}: {e}")
        return events

    def read_since(self, repo_url: str, since: datetime) -> List[Event]:
        return [e for e in self.read_all(repo_url) if e.timestamp > since]

    def read_for_agent(self, repo_url: str, agent: str) -> List[Event]:
        return [e for e in self.read_all(repo_url) if e.is_relevant_to(agent)]

    def has_rebase_needed(self, repo_url: str, agent: str, since: datetime) -> bool:
        """True if a rebase_needed aimed at agent (or at everyone) arrived after since."""
        return any(e.is_rebase_signal_for(agent) for e in self.read_since(repo_url, since))
