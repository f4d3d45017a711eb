"""Unit tests for the bounded event log and event ids (powerwatch.event_log)."""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from powerwatch.event_log import EventIdGenerator, EventLog
from powerwatch.models import Event, EventType
from powerwatch.storage import MemoryStorage

from conftest import T0


def make_event(i: int) -> Event:
    return Event(
        id=f"{i}-{i}",
        type=EventType.REBOOT,
        timestamp=T0 + timedelta(seconds=i),
        client_id="A",
        details=f"event {i}",
    )


def test_ids_unique_within_one_tick():
    gen = EventIdGenerator()
    ids = [gen(T0) for _ in range(5)]
    assert len(set(ids)) == 5
    assert [EventIdGenerator.sequence_of(i) for i in ids] == [1, 2, 3, 4, 5]


def test_ids_continue_after_loaded_events():
    gen = EventIdGenerator.after([make_event(7), make_event(3)])
    assert EventIdGenerator.sequence_of(gen(T0)) == 8


def test_ids_ignore_foreign_formats():
    loaded = Event(id="event_1700000000000", type=EventType.REBOOT, timestamp=T0, client_id="A")
    gen = EventIdGenerator.after([loaded])
    assert gen(T0).endswith("-1")


@pytest.mark.asyncio
async def test_recent_is_newest_first():
    log = EventLog(MemoryStorage(), max_events=10)
    for i in range(3):
        await log.append(make_event(i))
    assert [e.details for e in log.recent(2)] == ["event 2", "event 1"]
    assert [e.details for e in log.all()] == ["event 2", "event 1", "event 0"]
    assert log.recent(0) == []


@pytest.mark.asyncio
async def test_never_exceeds_bound_and_keeps_newest():
    storage = MemoryStorage()
    log = EventLog(storage, max_events=5)
    for i in range(12):
        await log.append(make_event(i))
        assert len(log) <= 5
    assert [e.details for e in log.all()] == [f"event {i}" for i in range(11, 6, -1)]
    _, persisted = await storage.load_all()
    assert [e.id for e in persisted] == [e.id for e in log.all()]


@pytest.mark.asyncio
async def test_trim_called_only_on_overflow():
    storage = AsyncMock(spec=MemoryStorage)
    log = EventLog(storage, max_events=2)
    await log.append(make_event(0))
    await log.append(make_event(1))
    storage.trim_events.assert_not_awaited()
    await log.append(make_event(2))
    storage.trim_events.assert_awaited_once_with(2)


@pytest.mark.asyncio
async def test_memory_updated_even_if_storage_fails():
    from powerwatch.errors import StorageError

    storage = AsyncMock(spec=MemoryStorage)
    storage.append_event.side_effect = [None, StorageError("down")]
    log = EventLog(storage, max_events=1)
    await log.append(make_event(0))
    with pytest.raises(StorageError):
        await log.append(make_event(1))
    assert [e.details for e in log.all()] == ["event 1"]


def test_load_truncates_to_bound():
    log = EventLog(MemoryStorage(), max_events=2)
    log.load([make_event(3), make_event(2), make_event(1)])
    assert [e.details for e in log.all()] == ["event 3", "event 2"]


def test_rejects_non_positive_bound():
    with pytest.raises(ValueError):
        EventLog(MemoryStorage(), max_events=0)
