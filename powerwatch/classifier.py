"""
Per-client connectivity state machine (pure, no I/O, no clock reads).
States: CONNECTED, DISCONNECTED.
Transitions: unknown -> CONNECTED on first heartbeat (silent);
CONNECTED/DISCONNECTED -> CONNECTED on heartbeat (+ reboot if boot session changed,
+ reconnection if it was DISCONNECTED); CONNECTED -> DISCONNECTED only on sweep timeout.
"""
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from powerwatch.models import (
    ClientRecord,
    ClientStatus,
    Event,
    EventType,
    HeartbeatReport,
)

IdFactory = Callable[[datetime], str]


def _reboot_event(new_id: IdFactory, record: ClientRecord, now: datetime) -> Event:
    return Event(
        id=new_id(now),
        type=EventType.REBOOT,
        timestamp=now,
        client_id=record.client_id,
        hostname=record.hostname,
        details=f"Server reboot - {record.display_name}",
    )


def _reconnection_event(new_id: IdFactory, record: ClientRecord, now: datetime, downtime: int) -> Event:
    return Event(
        id=new_id(now),
        type=EventType.RECONNECTION,
        timestamp=now,
        client_id=record.client_id,
        hostname=record.hostname,
        details=f"{record.display_name} reconnected after {downtime}s",
        duration=downtime,
    )


def _disconnection_event(new_id: IdFactory, record: ClientRecord, now: datetime) -> Event:
    return Event(
        id=new_id(now),
        type=EventType.DISCONNECTION,
        timestamp=now,
        client_id=record.client_id,
        hostname=record.hostname,
        details=f"{record.display_name} stopped sending heartbeats",
    )


def downtime_seconds(last_seen: datetime, now: datetime) -> int:
    return max(0, math.floor((now - last_seen).total_seconds()))


def is_boot_change(existing: ClientRecord, report: HeartbeatReport) -> bool:
    """
    True when the report names a different boot session than the stored one.
    Absent boot time on either side means unknown: never a reboot.
    First-run reports never count (registry may have been reset under them).
    """
    if report.is_first_run:
        return False
    if report.boot_time is None or existing.boot_time is None:
        return False
    return report.boot_time != existing.boot_time


def classify(
    existing: Optional[ClientRecord],
    report: HeartbeatReport,
    now: datetime,
    new_id: IdFactory,
) -> tuple[ClientRecord, list[Event]]:
    """
    Decide the updated record and the events one heartbeat produces.
    Events come back in emission order: reboot before reconnection.
    """
    if existing is None:
        record = ClientRecord(
            client_id=report.client_id,
            hostname=report.hostname,
            status=ClientStatus.CONNECTED,
            last_seen=now,
            boot_time=report.boot_time or now,
            total_heartbeats=1,
            ip=report.ip,
            user_agent=report.user_agent,
        )
        return record, []

    updated = existing.copy(
        status=ClientStatus.CONNECTED,
        last_seen=now,
        boot_time=report.boot_time or existing.boot_time,
        total_heartbeats=existing.total_heartbeats + 1,
        hostname=report.hostname or existing.hostname,
        ip=report.ip or existing.ip,
        user_agent=report.user_agent or existing.user_agent,
    )

    events: list[Event] = []
    if is_boot_change(existing, report):
        events.append(_reboot_event(new_id, updated, now))
    if existing.status == ClientStatus.DISCONNECTED:
        downtime = downtime_seconds(existing.last_seen, now)
        events.append(_reconnection_event(new_id, updated, now, downtime))
    return updated, events


def is_timed_out(record: ClientRecord, now: datetime, timeout: timedelta) -> bool:
    return now - record.last_seen > timeout


def classify_timeout(
    record: ClientRecord,
    now: datetime,
    timeout: timedelta,
    new_id: IdFactory,
) -> tuple[ClientRecord, list[Event]]:
    """
    Sweep half of the state machine. Already DISCONNECTED or still fresh: unchanged, no events.
    """
    if record.status != ClientStatus.CONNECTED or not is_timed_out(record, now, timeout):
        return record, []
    demoted = record.copy(status=ClientStatus.DISCONNECTED)
    return demoted, [_disconnection_event(new_id, demoted, now)]
