"""
LivenessTracker: the one state object the HTTP layer, the sweeper and the CLI share.
Heartbeats and sweeps for the same client run under that client's asyncio.Lock
(read existing -> classify -> write record + events), so two heartbeats never
classify against the same stale record. Different clients never wait on each other.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from powerwatch.classifier import classify, classify_timeout
from powerwatch.errors import StorageError
from powerwatch.event_log import DEFAULT_MAX_EVENTS, EventIdGenerator, EventLog
from powerwatch.models import (
    ClientRecord,
    Event,
    EventType,
    UNKNOWN_HOSTNAME,
    event_to_dict,
    format_timestamp,
    record_to_dict,
    report_from_payload,
    utcnow,
)
from powerwatch.registry import ClientRegistry
from powerwatch.storage import StorageAdapter

logger = logging.getLogger("powerwatch.tracker")

DEFAULT_LIVENESS_TIMEOUT = timedelta(minutes=5)


@dataclass
class FlushPolicy:
    """write_through: flush after every mutation. Otherwise flush every `interval` seconds."""
    write_through: bool = False
    interval: float = 300.0


class LivenessTracker:
    def __init__(
        self,
        storage: StorageAdapter,
        max_events: int = DEFAULT_MAX_EVENTS,
        liveness_timeout: timedelta = DEFAULT_LIVENESS_TIMEOUT,
        flush_policy: Optional[FlushPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.registry = ClientRegistry(storage)
        self.events = EventLog(storage, max_events=max_events)
        self.liveness_timeout = liveness_timeout
        self.flush_policy = flush_policy or FlushPolicy()
        self._clock = clock
        self._new_id = EventIdGenerator()
        self._locks: dict[str, asyncio.Lock] = {}
        self._started = time.monotonic()

    async def load(self) -> None:
        clients, events = await self.storage.load_all()
        self.registry.load(clients)
        self.events.load(events)
        self._new_id = EventIdGenerator.after(events)
        logger.info(
            "Tracker ready: %d clients, %d events (%s storage)",
            len(clients),
            len(self.events),
            self.storage.backend_name,
        )

    def _lock_for(self, client_id: str) -> asyncio.Lock:
        # Kept after cleanup so queued and later heartbeats share one lock.
        lock = self._locks.get(client_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[client_id] = lock
        return lock

    async def _commit(self, record: ClientRecord, events: list[Event]) -> None:
        """
        Record and events land in memory together even if storage fails part way;
        after every step has been tried the first retryable failure is re-raised,
        else the first failure.
        """
        failures: list[StorageError] = []
        try:
            await self.registry.put(record.client_id, record)
        except StorageError as e:
            failures.append(e)
        for event in events:
            try:
                await self.events.append(event)
            except StorageError as e:
                failures.append(e)
        if failures:
            # A timeout must reach the caller even behind a hard failure.
            retryable = [e for e in failures if e.retryable]
            raise (retryable or failures)[0]
        if self.flush_policy.write_through:
            await self.storage.flush()

    async def submit_heartbeat(
        self,
        payload: Any,
        fallback_client_id: Optional[str] = None,
        now: Optional[datetime] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Returns {"status": "ok", "isReboot", "received", "events", "persisted"}.
        ValidationError before anything is touched; retryable StorageError is raised.
        Other storage failures leave the in-memory state updated and come back as
        "persisted": False plus the error dict.
        """
        report = report_from_payload(payload, fallback_client_id, ip=ip, user_agent=user_agent)
        not_persisted: Optional[StorageError] = None
        async with self._lock_for(report.client_id):
            now = now or self._clock()
            existing = await self.registry.get(report.client_id)
            record, events = classify(existing, report, now, self._new_id)
            try:
                await self._commit(record, events)
            except StorageError as e:
                if e.retryable:
                    logger.warning("Heartbeat from %s not persisted: %s", report.client_id, e)
                    raise
                logger.error("Heartbeat from %s kept in memory only: %s", report.client_id, e)
                not_persisted = e

        logger.debug("Heartbeat %s (%s) #%d", record.client_id, record.display_name, record.total_heartbeats)
        if existing is None:
            logger.info("New client %s (%s)", record.client_id, record.display_name)
        for event in events:
            logger.info("%s %s: %s", event.type.value.upper(), event.client_id, event.details)
        result = {
            "status": "ok",
            "received": format_timestamp(report.timestamp),
            "isReboot": any(e.type == EventType.REBOOT for e in events),
            "events": [event_to_dict(e) for e in events],
            "persisted": not_persisted is None,
        }
        if not_persisted is not None:
            result["error"] = not_persisted.to_dict()
        return result

    async def sweep(self, now: Optional[datetime] = None) -> list[Event]:
        """Demote connected clients silent for longer than the liveness timeout."""
        now = now or self._clock()
        emitted: list[Event] = []
        for client_id, _ in await self.registry.list_all():
            async with self._lock_for(client_id):
                # Re-read under the lock: a heartbeat may have landed since list_all.
                current = await self.registry.get(client_id)
                if current is None:
                    continue
                record, events = classify_timeout(current, now, self.liveness_timeout, self._new_id)
                if not events:
                    continue
                try:
                    await self._commit(record, events)
                except StorageError as e:
                    logger.error("Disconnection of %s kept in memory only: %s", client_id, e)
            for event in events:
                logger.info("DISCONNECTION %s: %s", client_id, event.details)
            emitted.extend(events)
        return emitted

    async def get_status(self) -> dict[str, Any]:
        clients = await self.registry.list_all()
        return {
            "events": [event_to_dict(e) for e in self.events.all()],
            "clients": {cid: record_to_dict(r) for cid, r in clients},
        }

    async def get_liveness_report(self, timeout_minutes: int = 5, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or self._clock()
        cutoff = now - timedelta(minutes=timeout_minutes)
        rows = []
        for client_id, r in await self.registry.list_all():
            rows.append({
                "clientId": client_id,
                "hostname": r.hostname or UNKNOWN_HOSTNAME,
                "lastSeen": format_timestamp(r.last_seen),
                "minutesSinceLast": max(0, math.floor((now - r.last_seen).total_seconds() / 60)),
                "status": "active" if r.last_seen > cutoff else "inactive",
                "connection": r.status.value,
                "totalHeartbeats": r.total_heartbeats,
            })
        rows.sort(key=lambda c: c["minutesSinceLast"])
        active = sum(1 for c in rows if c["status"] == "active")
        inactive = len(rows) - active
        return {
            "timestamp": format_timestamp(now),
            "timeoutMinutes": timeout_minutes,
            "totalClients": len(rows),
            "activeClients": active,
            "inactiveClients": inactive,
            "clients": rows,
            "summary": {
                "active": active,
                "inactive": inactive,
                "warning": "Inactive clients detected" if inactive else "All clients active",
            },
        }

    async def cleanup(self, older_than_hours: float = 24, now: Optional[datetime] = None) -> dict[str, Any]:
        """Remove client records (never events) last seen before the cutoff. Storage errors propagate."""
        now = now or self._clock()
        cutoff = now - timedelta(hours=older_than_hours)
        removed = 0
        for client_id, _ in await self.registry.list_all():
            async with self._lock_for(client_id):
                current = await self.registry.get(client_id)
                if current is None or current.last_seen >= cutoff:
                    continue
                await self.registry.remove(client_id)
            removed += 1
            logger.info("Removed client %s, last seen %s", client_id, format_timestamp(current.last_seen))
        if removed:
            await self.storage.flush()
        return {"removedCount": removed, "remainingClients": len(self.registry)}

    async def get_health(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or self._clock()
        clients = await self.registry.list_all()
        active = sum(1 for _, r in clients if now - r.last_seen < self.liveness_timeout)
        return {
            "status": "healthy",
            "timestamp": format_timestamp(now),
            "storage": self.storage.backend_name,
            "totalClients": len(clients),
            "activeClients": active,
            "uptime": round(time.monotonic() - self._started, 1),
        }

    async def flush(self) -> None:
        await self.storage.flush()

    async def close(self) -> None:
        """Final flush then release the backend. Called on graceful shutdown."""
        try:
            await self.storage.flush()
        finally:
            await self.storage.close()
        logger.info("Tracker closed, state flushed")
