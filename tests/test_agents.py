"""Tests for agent records and completion history."""

import pytest

from agentbus.agents import AgentDirectory, AgentRecord, HistoryLog, HistoryRecord
from agentbus.exceptions import NotFoundError, StorageError, ValidationError


@pytest.fixture
def directory(tmp_path):
    return AgentDirectory(str(tmp_path))


def test_save_and_load(directory):
    directory.save(AgentRecord(name="fix-bug", repo="https://github.com/u/r", branch="main"))

    record = directory.load("fix-bug")

    assert record.repo == "https://github.com/u/r"
    assert record.branch == "main"
    assert record.created


def test_load_unknown_agent(directory):
    with pytest.raises(NotFoundError) as exc_info:
        directory.load("ghost")
    assert exc_info.value.name == "ghost"


def test_load_corrupt_record(directory, tmp_path):
    (tmp_path / "agents").mkdir()
    (tmp_path / "agents" / "broken.json").write_text("{")

    with pytest.raises(StorageError):
        directory.load("broken")


@pytest.mark.parametrize("name", ["", "../escape", "a/b", ".."])
def test_rejects_unsafe_names(directory, name):
    with pytest.raises(ValidationError):
        directory.save(AgentRecord(name=name))


def test_list_and_remove(directory):
    directory.save(AgentRecord(name="a"))
    directory.save(AgentRecord(name="b"))

    assert [r.name for r in directory.list()] == ["a", "b"]
    assert directory.remove("a") is True
    assert directory.remove("a") is False
    assert [r.name for r in directory.list()] == ["b"]


def test_list_empty_home(directory):
    assert directory.list() == []


def test_history_filter_by_name(tmp_path):
    log = HistoryLog(str(tmp_path))
    for name in ("a", "b", "a"):
        log.save(HistoryRecord(
            name=name,
            repo="r",
            created="2025-01-01T00:00:00+00:00",
            completed_at="2025-01-01T01:00:00+00:00",
            result="success",
            attempts=1,
        ))

    assert len(log.list()) == 3
    assert len(log.list("a")) == 2
    assert log.list("c") == []
