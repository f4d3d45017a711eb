"""
Client records, outage events and heartbeat reports, plus their dict codecs.
Persisted and wire form uses the camelCase keys heartbeat senders already emit;
timestamps are ISO-8601 strings in UTC.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from powerwatch.errors import ValidationError

UNKNOWN_HOSTNAME = "unknown"


class ClientStatus(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class EventType(Enum):
    REBOOT = "reboot"
    RECONNECTION = "reconnection"
    DISCONNECTION = "disconnection"
    OUTAGE = "outage"  # reserved, never emitted


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Accept ISO-8601 strings (with or without 'Z'), epoch seconds, epoch
    milliseconds or datetimes. Naive values are taken as UTC. None/"" -> None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


@dataclass
class ClientRecord:
    client_id: str
    status: ClientStatus
    last_seen: datetime
    boot_time: datetime
    total_heartbeats: int = 0
    hostname: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.hostname and self.hostname != UNKNOWN_HOSTNAME:
            return self.hostname
        return self.client_id

    def copy(self, **changes: Any) -> "ClientRecord":
        return replace(self, **changes)


@dataclass(frozen=True)
class Event:
    id: str
    type: EventType
    timestamp: datetime
    client_id: str
    hostname: Optional[str] = None
    details: str = ""
    duration: Optional[int] = None  # seconds of downtime, reconnection only


@dataclass
class HeartbeatReport:
    client_id: str
    timestamp: Optional[datetime] = None
    boot_time: Optional[datetime] = None
    is_reboot: bool = False
    is_first_run: bool = False
    hostname: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


def record_to_dict(r: ClientRecord) -> dict[str, Any]:
    return {
        "clientId": r.client_id,
        "hostname": r.hostname,
        "status": r.status.value,
        "lastSeen": format_timestamp(r.last_seen),
        "bootTime": format_timestamp(r.boot_time),
        "totalHeartbeats": r.total_heartbeats,
        "ip": r.ip,
        "userAgent": r.user_agent,
    }


def dict_to_record(d: dict[str, Any], client_id: Optional[str] = None) -> ClientRecord:
    """Raises ValueError/KeyError on malformed input; callers decide how to recover."""
    cid = str(client_id or d.get("clientId") or "").strip()
    if not cid:
        raise ValueError("record without clientId")
    last_seen = parse_timestamp(d.get("lastSeen"))
    if last_seen is None:
        raise ValueError(f"record {cid} without lastSeen")
    boot_time = parse_timestamp(d.get("bootTime")) or last_seen
    hostname = d.get("hostname") or None
    return ClientRecord(
        client_id=cid,
        hostname=str(hostname) if hostname else None,
        status=ClientStatus(d.get("status", ClientStatus.CONNECTED.value)),
        last_seen=last_seen,
        boot_time=boot_time,
        total_heartbeats=int(d.get("totalHeartbeats", 0) or 0),
        ip=_optional_str(d.get("ip")),
        user_agent=_optional_str(d.get("userAgent")),
    )


def event_to_dict(e: Event) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": e.id,
        "type": e.type.value,
        "timestamp": format_timestamp(e.timestamp),
        "clientId": e.client_id,
        "hostname": e.hostname,
        "details": e.details,
    }
    if e.duration is not None:
        out["duration"] = e.duration
    return out


def dict_to_event(d: dict[str, Any]) -> Event:
    timestamp = parse_timestamp(d.get("timestamp"))
    if timestamp is None:
        raise ValueError(f"event {d.get('id')!r} without timestamp")
    duration = d.get("duration")
    return Event(
        id=str(d["id"]),
        type=EventType(d["type"]),
        timestamp=timestamp,
        client_id=str(d.get("clientId", "")),
        hostname=d.get("hostname") or None,
        details=str(d.get("details", "")),
        duration=int(duration) if duration is not None else None,
    )


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def report_from_payload(
    payload: Any,
    fallback_client_id: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> HeartbeatReport:
    """
    Build a HeartbeatReport from a decoded JSON body.
    ip and user_agent come from the transport, never from the body.
    Raises ValidationError without touching any state.
    """
    if not isinstance(payload, dict):
        raise ValidationError("heartbeat payload must be a JSON object")
    client_id = str(payload.get("clientId") or fallback_client_id or "").strip()
    if not client_id:
        raise ValidationError("clientId is required")
    try:
        timestamp = parse_timestamp(payload.get("timestamp"))
        boot_time = parse_timestamp(payload.get("bootTime"))
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise ValidationError(f"invalid timestamp for {client_id}: {e}") from e
    hostname = payload.get("hostname")
    return HeartbeatReport(
        client_id=client_id,
        timestamp=timestamp,
        boot_time=boot_time,
        is_reboot=_flag(payload.get("isReboot", False)),
        is_first_run=_flag(payload.get("isFirstRun", False)),
        hostname=(str(hostname).strip() or None) if hostname else None,
        ip=_optional_str(ip),
        user_agent=_optional_str(user_agent),
    )
