"""Shared fixtures: fixed clock origin, trackers over memory storage, a fake async Redis client."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from powerwatch.storage import MemoryStorage
from powerwatch.tracker import LivenessTracker

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
BOOT_1 = datetime(2026, 3, 1, 8, 0, 0, tzinfo=timezone.utc)
BOOT_2 = datetime(2026, 3, 1, 12, 6, 30, tzinfo=timezone.utc)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for RedisStorage."""

    def __init__(self, delay: float = 0.0) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.lists: dict[str, list[str]] = {}
        self.ttls: dict[str, int] = {}
        self.delay = delay
        self.closed = False

    async def _tick(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    async def ping(self) -> bool:
        await self._tick()
        return True

    async def smembers(self, key: str) -> set[str]:
        await self._tick()
        return set(self.sets.get(key, set()))

    async def srem(self, key: str, *members: str) -> int:
        await self._tick()
        return self._srem(key, *members)

    def _srem(self, key: str, *members: str) -> int:
        s = self.sets.get(key, set())
        before = len(s)
        s.difference_update(members)
        return before - len(s)

    async def hgetall(self, key: str) -> dict[str, str]:
        await self._tick()
        return dict(self.hashes.get(key, {}))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        await self._tick()
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start:end + 1])

    async def lpush(self, key: str, *values: str) -> int:
        await self._tick()
        items = self.lists.setdefault(key, [])
        for v in values:
            items.insert(0, v)
        return len(items)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        await self._tick()
        items = self.lists.get(key, [])
        self.lists[key] = items[start:] if end == -1 else items[start:end + 1]
        return True

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list = []

    def hset(self, key: str, mapping: dict[str, str]) -> "FakePipeline":
        self._ops.append(lambda: self._redis.hashes.setdefault(key, {}).update(mapping))
        return self

    def expire(self, key: str, seconds: int) -> "FakePipeline":
        self._ops.append(lambda: self._redis.ttls.__setitem__(key, seconds))
        return self

    def sadd(self, key: str, *members: str) -> "FakePipeline":
        self._ops.append(lambda: self._redis.sets.setdefault(key, set()).update(members))
        return self

    def srem(self, key: str, *members: str) -> "FakePipeline":
        self._ops.append(lambda: self._redis._srem(key, *members))
        return self

    def delete(self, *keys: str) -> "FakePipeline":
        def run():
            for k in keys:
                self._redis.hashes.pop(k, None)
                self._redis.ttls.pop(k, None)
        self._ops.append(run)
        return self

    async def execute(self) -> list:
        await self._redis._tick()
        return [op() for op in self._ops]


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def tracker(storage):
    return LivenessTracker(storage, max_events=1000, liveness_timeout=minutes(5))


@pytest.fixture
def fake_redis():
    return FakeRedis()
