"""Tests for the coordination event log."""

from datetime import datetime, timedelta, timezone

import pytest

from agentbus.backends import MemoryBackend
from agentbus.events import Event, EventType, Relevance
from agentbus.exceptions import ValidationError
from agentbus.namespace import CoordinationStore, resolve_namespace

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class StepClock:
    """Returns T0, T0+1s, T0+2s, ..."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(seconds=1)
        return current


@pytest.fixture
def clocked_store():
    return CoordinationStore(MemoryBackend(), clock=StepClock())


class TestEventType:
    def test_relevance_by_kind(self):
        assert EventType.PUSHED.relevance is Relevance.BROADCAST
        assert EventType.MERGED.relevance is Relevance.BROADCAST
        assert EventType.REBASE_NEEDED.relevance is Relevance.TARGETED
        for kind in (EventType.CLAIM, EventType.RELEASE, EventType.COMMITTED, EventType.PR_CREATED):
            assert kind.relevance is Relevance.AUTHOR

    def test_parse_rejects_unknown_type(self):
        with pytest.raises(ValidationError):
            EventType.parse("deployed")

    def test_is_string_enum(self):
        assert EventType.PR_CREATED == "pr_created"


class TestEvent:
    def test_json_roundtrip_keeps_fields(self):
        event = Event(EventType.COMMITTED, "agent-1", T0, {"sha": "abc123"})

        parsed = Event.from_json(event.to_json())

        assert parsed == event

    def test_empty_data_is_omitted(self):
        event = Event(EventType.PUSHED, "agent-1", T0)
        assert '"data"' not in event.to_json()

    @pytest.mark.parametrize("line", [
        '{"type": "pushed", "agent": "a"',
        '{"type": "bogus", "agent": "a", "timestamp": "2025-01-01T00:00:00+00:00"}',
        '{"agent": "a", "timestamp": "2025-01-01T00:00:00+00:00"}',
        '{"type": "pushed", "agent": "a", "timestamp": "not-a-date"}',
        '[1, 2, 3]',
    ])
    def test_from_json_rejects_malformed(self, line):
        with pytest.raises(ValueError):
            Event.from_json(line)

    def test_untargeted_rebase_is_relevant_to_everyone(self):
        event = Event(EventType.REBASE_NEEDED, "agent-b", T0)
        assert event.is_relevant_to("agent-a")
        assert event.is_rebase_signal_for("agent-a")

    def test_targeted_rebase_only_for_target(self):
        event = Event(EventType.REBASE_NEEDED, "agent-b", T0, {"target": "agent-c"})
        assert event.is_relevant_to("agent-c")
        assert not event.is_relevant_to("agent-a")
        assert not event.is_rebase_signal_for("agent-a")


class TestPublish:
    def test_publish_and_read(self, store, repo):
        store.events.publish(repo, EventType.COMMITTED, "agent-1", {"sha": "abc123"})

        events = store.events.read_all(repo)

        assert len(events) == 1
        assert events[0].type == EventType.COMMITTED
        assert events[0].agent == "agent-1"
        assert events[0].data["sha"] == "abc123"
        assert events[0].timestamp.tzinfo is not None

    def test_publish_accepts_type_string(self, store, repo):
        event = store.events.publish(repo, "pr_created", "agent-1", {"number": "12"})
        assert event.type is EventType.PR_CREATED

    def test_publish_unknown_type_fails(self, store, repo):
        with pytest.raises(ValidationError):
            store.events.publish(repo, "deployed", "agent-1")
        assert store.events.read_all(repo) == []

    def test_publish_requires_agent(self, store, repo):
        with pytest.raises(ValidationError):
            store.events.publish(repo, EventType.PUSHED, "")

    def test_read_all_keeps_append_order(self, store, repo):
        kinds = [EventType.COMMITTED, EventType.PUSHED, EventType.PR_CREATED]
        for kind in kinds:
            store.events.publish(repo, kind, "agent-1")

        assert [e.type for e in store.events.read_all(repo)] == kinds

    def test_timestamp_assigned_by_log(self, clocked_store, repo):
        first = clocked_store.events.publish(repo, EventType.PUSHED, "agent-1")
        second = clocked_store.events.publish(repo, EventType.PUSHED, "agent-1")

        assert first.timestamp == T0
        assert second.timestamp == T0 + timedelta(seconds=1)

    def test_data_values_stored_as_strings(self, store, repo):
        store.events.publish(repo, EventType.COMMITTED, "agent-1", {"count": 3})
        assert store.events.read_all(repo)[0].data == {"count": "3"}

    def test_read_empty_log(self, store, repo):
        assert store.events.read_all(repo) == []


class TestReadSince:
    def test_filters_strictly_after(self, clocked_store, repo):
        for kind in (EventType.COMMITTED, EventType.PUSHED, EventType.MERGED):
            clocked_store.events.publish(repo, kind, "agent-1")

        since = T0 + timedelta(seconds=1)
        events = clocked_store.events.read_since(repo, since)

        assert [e.type for e in events] == [EventType.MERGED]


class TestReadForAgent:
    def test_relevance_rules(self, clocked_store, repo):
        log = clocked_store.events
        log.publish(repo, EventType.COMMITTED, "agent-a")                       # own
        log.publish(repo, EventType.COMMITTED, "agent-b")                       # other's commit
        log.publish(repo, EventType.PUSHED, "agent-b")                          # broadcast
        log.publish(repo, EventType.MERGED, "agent-c")                          # broadcast
        log.publish(repo, EventType.REBASE_NEEDED, "agent-b")                   # untargeted
        log.publish(repo, EventType.REBASE_NEEDED, "agent-b", {"target": "agent-a"})
        log.publish(repo, EventType.REBASE_NEEDED, "agent-b", {"target": "agent-c"})
        log.publish(repo, EventType.CLAIM, "agent-b", {"file": "x.py"})

        events = log.read_for_agent(repo, "agent-a")

        assert [(e.type.value, e.agent, e.target) for e in events] == [
            ("committed", "agent-a", None),
            ("pushed", "agent-b", None),
            ("merged", "agent-c", None),
            ("rebase_needed", "agent-b", None),
            ("rebase_needed", "agent-b", "agent-a"),
        ]

    def test_own_events_always_included(self, clocked_store, repo):
        clocked_store.events.publish(repo, EventType.REBASE_NEEDED, "agent-a", {"target": "agent-c"})

        events = clocked_store.events.read_for_agent(repo, "agent-a")

        assert len(events) == 1


class TestHasRebaseNeeded:
    def test_false_without_signal(self, clocked_store, repo):
        clocked_store.events.publish(repo, EventType.PUSHED, "agent-b")
        assert not clocked_store.events.has_rebase_needed(repo, "agent-a", T0 - timedelta(seconds=1))

    def test_untargeted_signal(self, clocked_store, repo):
        clocked_store.events.publish(repo, EventType.REBASE_NEEDED, "agent-b")
        assert clocked_store.events.has_rebase_needed(repo, "agent-a", T0 - timedelta(seconds=1))

    def test_targeted_signal(self, clocked_store, repo):
        clocked_store.events.publish(repo, EventType.REBASE_NEEDED, "agent-b", {"target": "agent-a"})
        assert clocked_store.events.has_rebase_needed(repo, "agent-a", T0 - timedelta(seconds=1))

    def test_signal_for_someone_else(self, clocked_store, repo):
        clocked_store.events.publish(repo, EventType.REBASE_NEEDED, "agent-b", {"target": "agent-c"})
        assert not clocked_store.events.has_rebase_needed(repo, "agent-a", T0 - timedelta(seconds=1))

    def test_signal_before_since_is_ignored(self, clocked_store, repo):
        clocked_store.events.publish(repo, EventType.REBASE_NEEDED, "agent-b")
        assert not clocked_store.events.has_rebase_needed(repo, "agent-a", T0)


class TestMalformedRecords:
    def test_file_log_skips_truncated_lines(self, file_store, repo):
        file_store.events.publish(repo, EventType.COMMITTED, "agent-1")
        path = file_store.backend.namespace_dir(resolve_namespace(repo)) / "messages.jsonl"
        with open(path, "a") as handle:
            handle.write('{"type": "pushed", "agent": "agent-2", "timest\n')
            handle.write("\n")
        file_store.events.publish(repo, EventType.MERGED, "agent-1")

        events = file_store.events.read_all(repo)

        assert [e.type for e in events] == [EventType.COMMITTED, EventType.MERGED]

    def test_redis_log_skips_garbage(self, redis_store, fake_redis, repo):
        redis_store.events.publish(repo, EventType.COMMITTED, "agent-1")
        fake_redis.rpush(f"agentbus:{resolve_namespace(repo)}:events", "not json")

        assert len(redis_store.events.read_all(repo)) == 1
