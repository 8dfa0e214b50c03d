"""Tests for the shared agent state table."""

from datetime import datetime, timedelta, timezone

import pytest

from agentbus.backends import MemoryBackend
from agentbus.exceptions import NotFoundError, ValidationError
from agentbus.namespace import CoordinationStore
from agentbus.state import AgentState, AgentStatus, StateSnapshot


def test_empty_state(store, repo):
    snapshot = store.state.get(repo)

    assert isinstance(snapshot, StateSnapshot)
    assert snapshot.agents == {}
    assert snapshot.last_updated == ""


def test_update_creates_record(store, repo):
    record = store.state.update(repo, "agent-1", AgentStatus.WORKING, "feature/x")

    snapshot = store.state.get(repo)
    assert snapshot.agents["agent-1"] == record
    assert record.status is AgentStatus.WORKING
    assert record.branch == "feature/x"
    assert snapshot.last_updated != ""


def test_update_accepts_status_string(store, repo):
    record = store.state.update(repo, "agent-1", "blocked")
    assert record.status is AgentStatus.BLOCKED


def test_update_rejects_unknown_status(store, repo):
    with pytest.raises(ValidationError):
        store.state.update(repo, "agent-1", "sleeping")
    assert store.state.get(repo).agents == {}


def test_update_overwrites_whole_record(store, repo):
    store.state.update(repo, "agent-1", AgentStatus.WORKING, "feature/x")
    store.state.update(repo, "agent-1", AgentStatus.DONE)

    record = store.state.get_agent(repo, "agent-1")
    assert record.status is AgentStatus.DONE
    # No field-level merge: the branch is not carried over
    assert record.branch == ""


def test_last_update_and_marker_advance():
    times = iter([
        datetime(2025, 1, 1, tzinfo=timezone.utc),
        datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=5),
    ])
    store = CoordinationStore(MemoryBackend(), clock=lambda: next(times))

    store.state.update("repo", "agent-1", AgentStatus.WORKING)
    store.state.update("repo", "agent-2", AgentStatus.IDLE)

    snapshot = store.state.get("repo")
    assert snapshot.agents["agent-1"].last_update.minute == 0
    assert snapshot.agents["agent-2"].last_update.minute == 5
    assert snapshot.last_updated == "2025-01-01T00:05:00+00:00"


def test_remove(store, repo):
    store.state.update(repo, "agent-1", AgentStatus.WORKING)
    store.state.update(repo, "agent-2", AgentStatus.WORKING)

    assert store.state.remove(repo, "agent-1") is True

    assert set(store.state.get(repo).agents) == {"agent-2"}


def test_remove_unknown_agent(store, repo):
    assert store.state.remove(repo, "ghost") is False


def test_get_agent_not_found(store, repo):
    with pytest.raises(NotFoundError):
        store.state.get_agent(repo, "ghost")


def test_agent_state_dict_roundtrip():
    record = AgentState(
        name="agent-1",
        status=AgentStatus.IDLE,
        last_update=datetime(2025, 1, 1, tzinfo=timezone.utc),
        branch="main",
    )
    assert AgentState.from_dict(record.to_dict()) == record
