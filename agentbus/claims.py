"""
Exclusive file claims.

A claim marks a repository path as being edited by one agent. Claiming and
releasing go through the backend's atomic read-modify-write, so two agents can
never both see a path as free and both take it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .events import EventType
from .exceptions import ConflictError, ForbiddenError, StorageError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claim:
    """A path held by an agent."""
    agent: str
    path: str
    claimed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "path": self.path,
            "claimed_at": self.claimed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, path: str, data: Dict[str, Any]) -> 'Claim':
        claimed_at = datetime.fromisoformat(data["claimed_at"])
        if claimed_at.tzinfo is None:
            claimed_at = claimed_at.replace(tzinfo=timezone.utc)
        return cls(agent=data["agent"], path=data.get("path") or path, claimed_at=claimed_at)


def _validate(agent: str, path: str) -> None:
    if not agent or not agent.strip():
        raise ValidationError("agent name cannot be empty")
    if not path or not path.strip():
        raise ValidationError("path cannot be empty")


class ClaimRegistry:
    """Claims of one store, addressed by repository URL."""

    def __init__(self, store, clock=None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def claim(self, repo_url: str, agent: str, path: str) -> Claim:
        """
        Claim path for agent.

        Claiming a path the agent already holds returns the existing claim.
        Raises ConflictError if another agent holds it.
        """
        _validate(agent, path)
        namespace = self.store.resolve_namespace(repo_url)

        def take(claims: Dict[str, Dict[str, Any]]):
            existing = claims.get(path)
            if existing is not None:
                try:
                    held = Claim.from_dict(path, existing)
                except (KeyError, TypeError, ValueError) as e:
                    raise StorageError(f"malformed claim for {path}: {e}") from e
                if held.agent != agent:
                    raise ConflictError(path, held.agent, held.claimed_at)
                return held, False
            claim = Claim(agent=agent, path=path, claimed_at=self.clock())
            claims[path] = claim.to_dict()
            return claim, True

        claim, created = self.store.backend.mutate_claims(namespace, take)
        if created:
            logger.info(f"Claimed {path} for {agent}")
            self.store.events.publish(repo_url, EventType.CLAIM, agent, {"file": path})
        else:
            logger.debug(f"{agent} already holds {path}")
        return claim

    def release(self, repo_url: str, agent: str, path: str) -> bool:
        """
        Release path held by agent.

        Returns False when the path was not claimed. Raises ForbiddenError if
        another agent holds it.
        """
        _validate(agent, path)
        namespace = self.store.resolve_namespace(repo_url)

        def drop(claims: Dict[str, Dict[str, Any]]) -> bool:
            existing = claims.get(path)
            if existing is None:
                return False
            holder = existing.get("agent")
            if holder != agent:
                raise ForbiddenError(path, holder, agent)
            del claims[path]
            return True

        released = self.store.backend.mutate_claims(namespace, drop)
        if released:
            logger.info(f"Released {path} from {agent}")
            self.store.events.publish(repo_url, EventType.RELEASE, agent, {"file": path})
        return released

    def list_claims(self, repo_url: str) -> Dict[str, Claim]:
        namespace = self.store.resolve_namespace(repo_url)
        raw = self.store.backend.load_claims(namespace)
        claims = {}
        for path, data in raw.items():
            try:
                claims[path] = Claim.from_dict(path, data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed claim for {path}: {e}")
        return claims

    def is_claimed(self, repo_url: str, path: str) -> Optional[str]:
        """Name of the agent holding path, or None."""
        claim = self.list_claims(repo_url).get(path)
        return claim.agent if claim else None

    def release_all_for_agent(self, repo_url: str, agent: str) -> List[str]:
        """Drop every claim agent holds in one atomic step. No events are published."""
        if not agent:
            raise ValidationError("agent name cannot be empty")
        namespace = self.store.resolve_namespace(repo_url)

        def drop_all(claims: Dict[str, Dict[str, Any]]) -> List[str]:
            held = sorted(path for path, data in claims.items() if data.get("agent") == agent)
            for path in held:
                del claims[path]
            return held

        released = self.store.backend.mutate_claims(namespace, drop_all)
        if released:
            logger.info(f"Released {len(released)} claim(s) held by {agent}")
        return released
