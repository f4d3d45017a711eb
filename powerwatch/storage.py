"""
Persistence boundary for the client registry and event log.
Backends: memory (tests, --storage memory), whole-snapshot JSON file, Redis
(hash per client, one capped list of events). All speak the same async interface;
the engine never knows which one is plugged in.
"""
import asyncio
import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import redis.asyncio as redis_lib
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from powerwatch.errors import SerializationError, StorageError
from powerwatch.models import (
    ClientRecord,
    Event,
    dict_to_event,
    dict_to_record,
    event_to_dict,
    format_timestamp,
    record_to_dict,
    utcnow,
)

logger = logging.getLogger("powerwatch.storage")

T = TypeVar("T")

DEFAULT_REDIS_PREFIX = ""
DEFAULT_CLIENT_TTL_DAYS = 30


class StorageAdapter(ABC):
    """Events are handed over and returned newest first."""

    backend_name = "abstract"

    @abstractmethod
    async def load_all(self) -> tuple[dict[str, ClientRecord], list[Event]]:
        ...

    @abstractmethod
    async def save_client(self, client_id: str, record: ClientRecord) -> None:
        ...

    @abstractmethod
    async def delete_client(self, client_id: str) -> None:
        ...

    @abstractmethod
    async def append_event(self, event: Event) -> None:
        ...

    @abstractmethod
    async def trim_events(self, max_events: int) -> None:
        ...

    @abstractmethod
    async def list_client_keys(self) -> list[str]:
        ...

    async def flush(self) -> None:
        """Make buffered writes durable. No-op for write-through backends."""

    async def close(self) -> None:
        await self.flush()


def _decode_clients(raw: dict[str, Any]) -> dict[str, ClientRecord]:
    clients: dict[str, ClientRecord] = {}
    for client_id, data in raw.items():
        try:
            clients[client_id] = dict_to_record(data, client_id)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable client record %s: %s", client_id, e)
    return clients


def _decode_events(raw: list[Any]) -> list[Event]:
    events: list[Event] = []
    for data in raw:
        try:
            events.append(dict_to_event(data))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable event %r: %s", data, e)
    return events


class MemoryStorage(StorageAdapter):
    """Keeps the serialized form so round-trips behave like a real backend."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._clients: dict[str, dict[str, Any]] = {}
        self._events: list[dict[str, Any]] = []

    async def load_all(self) -> tuple[dict[str, ClientRecord], list[Event]]:
        return _decode_clients(dict(self._clients)), _decode_events(list(self._events))

    async def save_client(self, client_id: str, record: ClientRecord) -> None:
        self._clients[client_id] = record_to_dict(record)

    async def delete_client(self, client_id: str) -> None:
        self._clients.pop(client_id, None)

    async def append_event(self, event: Event) -> None:
        self._events.insert(0, event_to_dict(event))

    async def trim_events(self, max_events: int) -> None:
        del self._events[max_events:]

    async def list_client_keys(self) -> list[str]:
        return sorted(self._clients)


class FileSnapshotStorage(StorageAdapter):
    """
    Whole state in one JSON file: read once at startup, rewritten in full on flush.
    Writes between flushes only touch the in-memory snapshot and mark it dirty.
    """

    backend_name = "file"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._clients: dict[str, dict[str, Any]] = {}
        self._events: list[dict[str, Any]] = []
        self._dirty = False
        self._flush_lock = asyncio.Lock()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _read_snapshot(self) -> dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SerializationError(f"corrupt snapshot {self.path}: {e}") from e
        except OSError as e:
            raise SerializationError(f"unreadable snapshot {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise SerializationError(f"snapshot {self.path} is not an object")
        clients = data.get("clients", {})
        events = data.get("events", [])
        if not isinstance(clients, dict) or not isinstance(events, list):
            raise SerializationError(f"snapshot {self.path} has wrong shape")
        return {"clients": clients, "events": events}

    def _keep_corrupt_copy(self) -> None:
        backup = self.path.with_name(self.path.name + ".corrupt")
        try:
            shutil.copyfile(self.path, backup)
            logger.warning("Kept corrupt snapshot as %s", backup)
        except OSError as e:
            logger.warning("Could not keep corrupt snapshot %s: %s", self.path, e)

    async def load_all(self) -> tuple[dict[str, ClientRecord], list[Event]]:
        if not self.path.exists():
            logger.info("No snapshot at %s, starting empty", self.path)
            self._clients, self._events = {}, []
            return {}, []
        try:
            data = await asyncio.to_thread(self._read_snapshot)
        except SerializationError as e:
            logger.error("%s; starting with empty state", e)
            await asyncio.to_thread(self._keep_corrupt_copy)
            self._clients, self._events = {}, []
            self._dirty = True
            return {}, []
        clients = _decode_clients(data["clients"])
        events = _decode_events(data["events"])
        self._clients = {cid: record_to_dict(r) for cid, r in clients.items()}
        self._events = [event_to_dict(e) for e in events]
        logger.info("Loaded %d clients and %d events from %s", len(clients), len(events), self.path)
        return clients, events

    async def save_client(self, client_id: str, record: ClientRecord) -> None:
        self._clients[client_id] = record_to_dict(record)
        self._dirty = True

    async def delete_client(self, client_id: str) -> None:
        if self._clients.pop(client_id, None) is not None:
            self._dirty = True

    async def append_event(self, event: Event) -> None:
        self._events.insert(0, event_to_dict(event))
        self._dirty = True

    async def trim_events(self, max_events: int) -> None:
        if len(self._events) > max_events:
            del self._events[max_events:]
            self._dirty = True

    async def list_client_keys(self) -> list[str]:
        return sorted(self._clients)

    def _write_snapshot(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    async def flush(self) -> None:
        async with self._flush_lock:
            if not self._dirty:
                return
            payload = {
                "clients": dict(self._clients),
                "events": list(self._events),
                "lastCheck": format_timestamp(utcnow()),
            }
            # Cleared before the write so mutations made while writing stay dirty.
            self._dirty = False
            try:
                await asyncio.to_thread(self._write_snapshot, payload)
            except OSError as e:
                self._dirty = True
                raise StorageError(f"could not write snapshot {self.path}: {e}") from e
            logger.debug("Snapshot written to %s (%d clients)", self.path, len(payload["clients"]))


class RedisStorage(StorageAdapter):
    """
    <prefix>client:<id>  hash per client, expires after client_ttl of silence
    <prefix>clients      set of known client ids
    <prefix>events       list of JSON events, newest at index 0
    Every call is bounded by `timeout`; a timeout is a retryable StorageError.
    """

    backend_name = "redis"

    def __init__(
        self,
        client: Any,
        prefix: str = DEFAULT_REDIS_PREFIX,
        client_ttl_seconds: Optional[int] = DEFAULT_CLIENT_TTL_DAYS * 86400,
        timeout: float = 5.0,
    ) -> None:
        self._redis = client
        self.prefix = prefix
        self.client_ttl_seconds = client_ttl_seconds
        self.timeout = timeout

    def _client_key(self, client_id: str) -> str:
        return f"{self.prefix}client:{client_id}"

    @property
    def _clients_key(self) -> str:
        return f"{self.prefix}clients"

    @property
    def _events_key(self) -> str:
        return f"{self.prefix}events"

    async def _call(self, what: str, aw: Awaitable[T], client_id: Optional[str] = None) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            raise StorageError(f"redis {what} timed out after {self.timeout}s", client_id, retryable=True) from e
        except RedisError as e:
            raise StorageError(f"redis {what} failed: {e}", client_id) from e

    async def load_all(self) -> tuple[dict[str, ClientRecord], list[Event]]:
        ids = await self._call("smembers", self._redis.smembers(self._clients_key))
        raw_clients: dict[str, Any] = {}
        for client_id in sorted(ids):
            data = await self._call("hgetall", self._redis.hgetall(self._client_key(client_id)), client_id)
            if not data:
                # Hash expired; drop the dangling id.
                await self._call("srem", self._redis.srem(self._clients_key, client_id), client_id)
                continue
            raw_clients[client_id] = data
        rows = await self._call("lrange", self._redis.lrange(self._events_key, 0, -1))
        raw_events: list[Any] = []
        for row in rows:
            try:
                raw_events.append(json.loads(row))
            except (TypeError, json.JSONDecodeError) as e:
                logger.warning("Skipping undecodable event entry: %s", e)
        return _decode_clients(raw_clients), _decode_events(raw_events)

    async def save_client(self, client_id: str, record: ClientRecord) -> None:
        mapping = {k: str(v) for k, v in record_to_dict(record).items() if v is not None}
        key = self._client_key(client_id)
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(key, mapping=mapping)
        if self.client_ttl_seconds:
            pipe.expire(key, self.client_ttl_seconds)
        pipe.sadd(self._clients_key, client_id)
        await self._call("save_client", pipe.execute(), client_id)

    async def delete_client(self, client_id: str) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.delete(self._client_key(client_id))
        pipe.srem(self._clients_key, client_id)
        await self._call("delete_client", pipe.execute(), client_id)

    async def append_event(self, event: Event) -> None:
        row = json.dumps(event_to_dict(event), ensure_ascii=False, separators=(",", ":"))
        await self._call("lpush", self._redis.lpush(self._events_key, row), event.client_id)

    async def trim_events(self, max_events: int) -> None:
        await self._call("ltrim", self._redis.ltrim(self._events_key, 0, max_events - 1))

    async def list_client_keys(self) -> list[str]:
        ids = await self._call("smembers", self._redis.smembers(self._clients_key))
        return sorted(ids)

    async def ping(self) -> None:
        await self._call("ping", self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


def build_storage(
    backend: str,
    snapshot_path: Optional[Path] = None,
    redis_url: str = "",
    redis_prefix: str = DEFAULT_REDIS_PREFIX,
    client_ttl_days: int = DEFAULT_CLIENT_TTL_DAYS,
    timeout: float = 5.0,
) -> StorageAdapter:
    """Backend names: memory, file, redis. Unknown names are a configuration error."""
    backend = (backend or "file").strip().lower()
    if backend == "memory":
        return MemoryStorage()
    if backend == "file":
        if snapshot_path is None:
            raise ValueError("file storage needs a snapshot path")
        return FileSnapshotStorage(snapshot_path)
    if backend == "redis":
        url = redis_url or "redis://127.0.0.1:6379/0"
        client = redis_lib.Redis.from_url(url, decode_responses=True)
        return RedisStorage(
            client,
            prefix=redis_prefix,
            client_ttl_seconds=client_ttl_days * 86400 if client_ttl_days > 0 else None,
            timeout=timeout,
        )
    raise ValueError(f"unknown storage backend {backend!r}")
