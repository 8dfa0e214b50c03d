"""
Storage backends for coordination namespaces.

Every backend exposes the same primitive operations on a namespace: claims and
agent state are JSON documents mutated through an atomic read-modify-write,
events are an append-only sequence of JSON lines.

- FileBackend keeps claims.json, messages.jsonl and state.json in a shared
  directory and serializes writers with an advisory lock file.
- RedisBackend keeps the same documents in Redis hashes and a list, using
  WATCH/MULTI for optimistic compare-and-set.
- MemoryBackend keeps everything in process memory.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import redis
from filelock import FileLock, Timeout
from redis.exceptions import RedisError, WatchError

from .exceptions import StorageError, ValidationError

logger = logging.getLogger(__name__)

ClaimsDoc = Dict[str, Dict[str, Any]]
StateDoc = Dict[str, Any]


def empty_state() -> StateDoc:
    return {"agents": {}, "last_updated": ""}


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to path via a temp file so readers never see a torn document."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class CoordinationBackend(ABC):
    """Primitive namespace operations shared by all registries."""

    @abstractmethod
    def initialize(self, namespace: str) -> None:
        """Create empty claims, events and state for namespace if absent."""

    @abstractmethod
    def load_claims(self, namespace: str) -> ClaimsDoc:
        """Return a snapshot of the claims document."""

    @abstractmethod
    def mutate_claims(self, namespace: str, fn: Callable[[ClaimsDoc], Any]) -> Any:
        """Apply fn to the claims document atomically and return its result.

        fn mutates the dict in place. If fn raises, nothing is written.
        """

    @abstractmethod
    def append_event(self, namespace: str, line: str) -> None:
        """Append one serialized event."""

    @abstractmethod
    def read_event_lines(self, namespace: str) -> List[str]:
        """Return every stored event line in append order."""

    @abstractmethod
    def load_state(self, namespace: str) -> StateDoc:
        """Return a snapshot of the state document."""

    @abstractmethod
    def mutate_state(self, namespace: str, fn: Callable[[StateDoc], Any]) -> Any:
        """Apply fn to the state document atomically and return its result."""

    def describe(self, namespace: str) -> str:
        """Human readable location of namespace."""
        return namespace


class FileBackend(CoordinationBackend):
    """Namespace directories under <root>/coordination/<namespace>/."""

    CLAIMS_FILE = "claims.json"
    EVENTS_FILE = "messages.jsonl"
    STATE_FILE = "state.json"
    LOCK_FILE = ".lock"

    def __init__(self, root: str, lock_timeout: float = 10.0):
        self.root = Path(root).expanduser()
        self.lock_timeout = lock_timeout

    def namespace_dir(self, namespace: str) -> Path:
        return self.root / "coordination" / namespace

    def describe(self, namespace: str) -> str:
        return str(self.namespace_dir(namespace))

    @contextmanager
    def _locked(self, namespace: str):
        directory = self.namespace_dir(namespace)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"cannot create coordination directory {directory}: {e}") from e

        lock = FileLock(str(directory / self.LOCK_FILE), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise StorageError(
                f"timed out after {self.lock_timeout}s waiting for lock on {directory}"
            ) from e
        except OSError as e:
            raise StorageError(f"cannot lock {directory}: {e}") from e
        try:
            yield directory
        finally:
            lock.release()

    def _read_json(self, path: Path, default: Any) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return default
        except (OSError, ValueError) as e:
            raise StorageError(f"cannot read {path.name}: {e}") from e
        return default if data is None else data

    def _write_json(self, path: Path, payload: Any) -> None:
        try:
            atomic_write_json(path, payload)
        except OSError as e:
            raise StorageError(f"cannot write {path.name}: {e}") from e

    def initialize(self, namespace: str) -> None:
        with self._locked(namespace) as directory:
            claims_path = directory / self.CLAIMS_FILE
            events_path = directory / self.EVENTS_FILE
            state_path = directory / self.STATE_FILE
            try:
                if not claims_path.exists():
                    atomic_write_json(claims_path, {})
                if not events_path.exists():
                    events_path.touch()
                if not state_path.exists():
                    atomic_write_json(state_path, empty_state())
            except OSError as e:
                raise StorageError(f"cannot initialize {directory}: {e}") from e
        logger.debug(f"Initialized coordination directory {directory}")

    def load_claims(self, namespace: str) -> ClaimsDoc:
        return self._read_json(self.namespace_dir(namespace) / self.CLAIMS_FILE, {})

    def mutate_claims(self, namespace: str, fn: Callable[[ClaimsDoc], Any]) -> Any:
        with self._locked(namespace) as directory:
            path = directory / self.CLAIMS_FILE
            claims = self._read_json(path, {})
            before = copy.deepcopy(claims)
            result = fn(claims)
            if claims != before:
                self._write_json(path, claims)
            return result

    def append_event(self, namespace: str, line: str) -> None:
        with self._locked(namespace) as directory:
            try:
                with open(directory / self.EVENTS_FILE, "a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as e:
                raise StorageError(f"cannot append to {self.EVENTS_FILE}: {e}") from e

    def read_event_lines(self, namespace: str) -> List[str]:
        path = self.namespace_dir(namespace) / self.EVENTS_FILE
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                return [line.rstrip("\n") for line in handle]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"cannot read {self.EVENTS_FILE}: {e}") from e

    def load_state(self, namespace: str) -> StateDoc:
        state = self._read_json(self.namespace_dir(namespace) / self.STATE_FILE, empty_state())
        state.setdefault("agents", {})
        state.setdefault("last_updated", "")
        if state["agents"] is None:
            state["agents"] = {}
        return state

    def mutate_state(self, namespace: str, fn: Callable[[StateDoc], Any]) -> Any:
        with self._locked(namespace) as directory:
            path = directory / self.STATE_FILE
            state = self.load_state(namespace)
            before = copy.deepcopy(state)
            result = fn(state)
            if state != before:
                self._write_json(path, state)
            return result


class RedisBackend(CoordinationBackend):
    """
    Namespaces stored in Redis.

    Keys per namespace:
        <prefix>:<ns>:claims  hash path -> claim JSON
        <prefix>:<ns>:events  list of event JSON lines
        <prefix>:<ns>:state   hash agent -> agent state JSON
        <prefix>:<ns>:meta    hash with created_at / last_updated
    """

    def __init__(self, redis_client, prefix: str = "agentbus", max_retries: int = 50):
        self.redis = redis_client
        self.prefix = prefix
        self.max_retries = max_retries

    def _key(self, namespace: str, part: str) -> str:
        return f"{self.prefix}:{namespace}:{part}"

    def describe(self, namespace: str) -> str:
        return self._key(namespace, "*")

    @contextmanager
    def _redis_errors(self, action: str):
        try:
            yield
        except WatchError:
            raise
        except RedisError as e:
            raise StorageError(f"{action} failed with Redis error: {e}") from e

    @staticmethod
    def _decode_hash(raw: Dict[str, str]) -> Dict[str, Any]:
        decoded = {}
        for field, value in raw.items():
            try:
                decoded[field] = json.loads(value)
            except ValueError:
                logger.debug(f"Skipping malformed hash entry {field!r}")
        return decoded

    def _transact(self, watch_keys: List[str], read, write, fn):
        """WATCH/MULTI loop: read the document, apply fn, write the changes."""
        with self._redis_errors("Transaction"):
            with self.redis.pipeline() as pipe:
                for attempt in range(self.max_retries):
                    try:
                        pipe.watch(*watch_keys)
                        current = read(pipe)
                        updated = copy.deepcopy(current)
                        result = fn(updated)
                        pipe.multi()
                        write(pipe, current, updated)
                        pipe.execute()
                        return result
                    except WatchError:
                        logger.debug(
                            f"Concurrent write on {watch_keys[0]}, retrying "
                            f"({attempt + 1}/{self.max_retries})"
                        )
                        continue
                    finally:
                        pipe.reset()
        raise StorageError(
            f"Gave up on {watch_keys[0]} after {self.max_retries} conflicting writers"
        )

    @staticmethod
    def _write_hash_diff(pipe, key: str, current: Dict[str, Any], updated: Dict[str, Any]) -> None:
        removed = [field for field in current if field not in updated]
        if removed:
            pipe.hdel(key, *removed)
        changed = {
            field: json.dumps(value, sort_keys=True)
            for field, value in updated.items()
            if current.get(field) != value
        }
        if changed:
            pipe.hset(key, mapping=changed)

    def initialize(self, namespace: str) -> None:
        meta_key = self._key(namespace, "meta")
        with self._redis_errors("Initialize namespace"):
            self.redis.hsetnx(meta_key, "created_at", datetime.now(timezone.utc).isoformat())
            self.redis.hsetnx(meta_key, "last_updated", "")
        logger.debug(f"Initialized coordination namespace {self.describe(namespace)}")

    def load_claims(self, namespace: str) -> ClaimsDoc:
        with self._redis_errors("Load claims"):
            return self._decode_hash(self.redis.hgetall(self._key(namespace, "claims")))

    def mutate_claims(self, namespace: str, fn: Callable[[ClaimsDoc], Any]) -> Any:
        key = self._key(namespace, "claims")

        def read(pipe):
            return self._decode_hash(pipe.hgetall(key))

        def write(pipe, current, updated):
            self._write_hash_diff(pipe, key, current, updated)

        return self._transact([key], read, write, fn)

    def append_event(self, namespace: str, line: str) -> None:
        with self._redis_errors("Append event"):
            self.redis.rpush(self._key(namespace, "events"), line)

    def read_event_lines(self, namespace: str) -> List[str]:
        with self._redis_errors("Read events"):
            return list(self.redis.lrange(self._key(namespace, "events"), 0, -1))

    def _read_state(self, client, namespace: str) -> StateDoc:
        agents = self._decode_hash(client.hgetall(self._key(namespace, "state")))
        last_updated = client.hget(self._key(namespace, "meta"), "last_updated") or ""
        return {"agents": agents, "last_updated": last_updated}

    def load_state(self, namespace: str) -> StateDoc:
        with self._redis_errors("Load state"):
            return self._read_state(self.redis, namespace)

    def mutate_state(self, namespace: str, fn: Callable[[StateDoc], Any]) -> Any:
        state_key = self._key(namespace, "state")
        meta_key = self._key(namespace, "meta")

        def read(pipe):
            return self._read_state(pipe, namespace)

        def write(pipe, current, updated):
            self._write_hash_diff(pipe, state_key, current["agents"], updated["agents"])
            if updated["last_updated"] != current["last_updated"]:
                pipe.hset(meta_key, "last_updated", updated["last_updated"])

        return self._transact([state_key, meta_key], read, write, fn)


class MemoryBackend(CoordinationBackend):
    """Process-local backend; all namespaces live in one dict."""

    def __init__(self):
        self._lock = threading.RLock()
        self._claims: Dict[str, ClaimsDoc] = {}
        self._events: Dict[str, List[str]] = {}
        self._state: Dict[str, StateDoc] = {}

    def describe(self, namespace: str) -> str:
        return f"memory:{namespace}"

    def initialize(self, namespace: str) -> None:
        with self._lock:
            self._claims.setdefault(namespace, {})
            self._events.setdefault(namespace, [])
            self._state.setdefault(namespace, empty_state())

    def load_claims(self, namespace: str) -> ClaimsDoc:
        with self._lock:
            return copy.deepcopy(self._claims.get(namespace, {}))

    def mutate_claims(self, namespace: str, fn: Callable[[ClaimsDoc], Any]) -> Any:
        with self._lock:
            claims = copy.deepcopy(self._claims.get(namespace, {}))
            result = fn(claims)
            self._claims[namespace] = claims
            return result

    def append_event(self, namespace: str, line: str) -> None:
        with self._lock:
            self._events.setdefault(namespace, []).append(line)

    def read_event_lines(self, namespace: str) -> List[str]:
        with self._lock:
            return list(self._events.get(namespace, []))

    def load_state(self, namespace: str) -> StateDoc:
        with self._lock:
            return copy.deepcopy(self._state.get(namespace, empty_state()))

    def mutate_state(self, namespace: str, fn: Callable[[StateDoc], Any]) -> Any:
        with self._lock:
            state = copy.deepcopy(self._state.get(namespace, empty_state()))
            result = fn(state)
            self._state[namespace] = state
            return result


BACKENDS = ("file", "redis", "memory")


def create_backend(
    name: str,
    home: Optional[str] = None,
    redis_url: Optional[str] = None,
    lock_timeout: float = 10.0,
) -> CoordinationBackend:
    """Build a backend by name ("file", "redis" or "memory")."""
    if name == "file":
        if not home:
            raise ValidationError("file backend requires a home directory")
        return FileBackend(home, lock_timeout=lock_timeout)
    if name == "redis":
        from .redis_pool import redis_pool_manager

        client = redis_pool_manager.get_client(redis_url)
        try:
            client.ping()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise StorageError(f"Failed to connect to Redis: {e}") from e
        return RedisBackend(client)
    if name == "memory":
        return MemoryBackend()
    raise ValidationError(f"unknown backend {name!r} (expected one of {', '.join(BACKENDS)})")
