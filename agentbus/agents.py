"""
Agent records and completion history.

Agent records tell the retry loop which repository an agent works on. History
records are written when an agent finishes its task.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .backends import atomic_write_json
from .exceptions import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AgentRecord:
    """Metadata about an agent."""
    name: str
    repo: str = ""
    branch: str = ""
    workdir: str = ""
    created: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentRecord':
        return cls(
            name=data["name"],
            repo=data.get("repo") or "",
            branch=data.get("branch") or "",
            workdir=data.get("workdir") or "",
            created=data.get("created") or _now(),
        )


@dataclass
class HistoryRecord:
    """Outcome of a finished retry run."""
    name: str
    repo: str
    created: str
    completed_at: str
    result: str
    attempts: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check_name(name: str) -> None:
    if not name or not name.strip():
        raise ValidationError("agent name cannot be empty")
    if "/" in name or "\\" in name or name in (".", ".."):
        raise ValidationError(f"invalid agent name: {name!r}")


class AgentDirectory:
    """Agent records stored as <home>/agents/<name>.json."""

    def __init__(self, home: str):
        self.path = Path(home).expanduser() / "agents"

    def _record_path(self, name: str) -> Path:
        _check_name(name)
        return self.path / f"{name}.json"

    def save(self, record: AgentRecord) -> AgentRecord:
        target = self._record_path(record.name)
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            atomic_write_json(target, record.to_dict())
        except OSError as e:
            raise StorageError(f"cannot save agent {record.name}: {e}") from e
        logger.info(f"Registered agent {record.name} ({record.repo or 'no repo'})")
        return record

    def load(self, name: str) -> AgentRecord:
        target = self._record_path(name)
        try:
            with open(target, "r", encoding="utf-8") as handle:
                return AgentRecord.from_dict(json.load(handle))
        except FileNotFoundError:
            raise NotFoundError(name) from None
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"cannot read agent {name}: {e}") from e

    def list(self) -> List[AgentRecord]:
        records = []
        if not self.path.is_dir():
            return records
        for entry in sorted(self.path.glob("*.json")):
            try:
                records.append(self.load(entry.stem))
            except (StorageError, ValidationError) as e:
                logger.warning(f"Skipping unreadable agent record {entry.name}: {e}")
        return records

    def remove(self, name: str) -> bool:
        target = self._record_path(name)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"cannot remove agent {name}: {e}") from e
        logger.info(f"Removed agent {name}")
        return True


class HistoryLog:
    """Completion records stored as <home>/history/<name>-<timestamp>.json."""

    def __init__(self, home: str):
        self.path = Path(home).expanduser() / "history"

    def save(self, record: HistoryRecord) -> Path:
        _check_name(record.name)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target = self.path / f"{record.name}-{stamp}.json"
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            atomic_write_json(target, record.to_dict())
        except OSError as e:
            raise StorageError(f"cannot save history for {record.name}: {e}") from e
        return target

    def list(self, name: Optional[str] = None) -> List[HistoryRecord]:
        records = []
        if not self.path.is_dir():
            return records
        for entry in sorted(self.path.glob("*.json")):
            try:
                with open(entry, "r", encoding="utf-8") as handle:
                    record = HistoryRecord(**json.load(handle))
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable history record {entry.name}: {e}")
                continue
            if name is None or record.name == name:
                records.append(record)
        return records
