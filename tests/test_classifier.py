"""Unit tests for the connectivity state machine (powerwatch.classifier)."""
from datetime import timedelta

import pytest

from powerwatch.classifier import classify, classify_timeout, downtime_seconds
from powerwatch.event_log import EventIdGenerator
from powerwatch.models import ClientRecord, ClientStatus, EventType, HeartbeatReport

from conftest import BOOT_1, BOOT_2, T0, minutes

TIMEOUT = timedelta(minutes=5)


@pytest.fixture
def new_id():
    return EventIdGenerator()


def record(status=ClientStatus.CONNECTED, last_seen=T0, boot_time=BOOT_1, hostname="nas"):
    return ClientRecord(
        client_id="A",
        hostname=hostname,
        status=status,
        last_seen=last_seen,
        boot_time=boot_time,
        total_heartbeats=3,
    )


def test_first_contact_creates_connected_record_silently(new_id):
    report = HeartbeatReport(client_id="A", boot_time=BOOT_1, is_reboot=True, hostname="nas")
    rec, events = classify(None, report, T0, new_id)
    assert events == []
    assert rec.status == ClientStatus.CONNECTED
    assert rec.last_seen == T0
    assert rec.boot_time == BOOT_1
    assert rec.total_heartbeats == 1
    assert rec.hostname == "nas"


def test_first_contact_without_boot_time_uses_now(new_id):
    rec, _ = classify(None, HeartbeatReport(client_id="A"), T0, new_id)
    assert rec.boot_time == T0


def test_steady_heartbeat_no_events(new_id):
    rec, events = classify(record(), HeartbeatReport(client_id="A", boot_time=BOOT_1), T0 + minutes(1), new_id)
    assert events == []
    assert rec.last_seen == T0 + minutes(1)
    assert rec.total_heartbeats == 4


def test_boot_change_emits_one_reboot(new_id):
    now = T0 + minutes(1)
    rec, events = classify(record(), HeartbeatReport(client_id="A", boot_time=BOOT_2), now, new_id)
    assert [e.type for e in events] == [EventType.REBOOT]
    assert events[0].timestamp == now
    assert "nas" in events[0].details
    assert events[0].duration is None
    assert rec.boot_time == BOOT_2


def test_first_run_suppresses_reboot(new_id):
    report = HeartbeatReport(client_id="A", boot_time=BOOT_2, is_first_run=True)
    rec, events = classify(record(), report, T0 + minutes(1), new_id)
    assert events == []
    assert rec.boot_time == BOOT_2


def test_missing_boot_time_never_reboots_and_keeps_session(new_id):
    rec, events = classify(record(), HeartbeatReport(client_id="A"), T0 + minutes(1), new_id)
    assert events == []
    assert rec.boot_time == BOOT_1


def test_reconnection_duration_is_floored_seconds(new_id):
    old = record(status=ClientStatus.DISCONNECTED)
    now = T0 + timedelta(seconds=360, milliseconds=900)
    rec, events = classify(old, HeartbeatReport(client_id="A", boot_time=BOOT_1), now, new_id)
    assert [e.type for e in events] == [EventType.RECONNECTION]
    assert events[0].duration == 360
    assert rec.status == ClientStatus.CONNECTED


def test_reboot_and_reconnection_both_fire_reboot_first(new_id):
    old = record(status=ClientStatus.DISCONNECTED)
    _, events = classify(old, HeartbeatReport(client_id="A", boot_time=BOOT_2), T0 + minutes(6), new_id)
    assert [e.type for e in events] == [EventType.REBOOT, EventType.RECONNECTION]
    assert events[0].id != events[1].id


def test_hostname_kept_when_report_omits_it(new_id):
    rec, _ = classify(record(hostname="nas"), HeartbeatReport(client_id="A"), T0, new_id)
    assert rec.hostname == "nas"
    rec, _ = classify(record(hostname="nas"), HeartbeatReport(client_id="A", hostname="nas-2"), T0, new_id)
    assert rec.hostname == "nas-2"


def test_transport_fields_follow_latest_non_empty_value(new_id):
    first, _ = classify(None, HeartbeatReport(client_id="A", ip="10.0.0.7", user_agent="curl/8.5"), T0, new_id)
    assert (first.ip, first.user_agent) == ("10.0.0.7", "curl/8.5")
    kept, _ = classify(first, HeartbeatReport(client_id="A"), T0 + minutes(1), new_id)
    assert (kept.ip, kept.user_agent) == ("10.0.0.7", "curl/8.5")
    moved, _ = classify(kept, HeartbeatReport(client_id="A", ip="10.0.0.9"), T0 + minutes(2), new_id)
    assert (moved.ip, moved.user_agent) == ("10.0.0.9", "curl/8.5")


def test_classify_does_not_mutate_existing(new_id):
    old = record(status=ClientStatus.DISCONNECTED)
    classify(old, HeartbeatReport(client_id="A", boot_time=BOOT_2), T0 + minutes(6), new_id)
    assert old.status == ClientStatus.DISCONNECTED
    assert old.boot_time == BOOT_1


def test_timeout_demotes_and_emits_disconnection(new_id):
    rec, events = classify_timeout(record(), T0 + minutes(6), TIMEOUT, new_id)
    assert rec.status == ClientStatus.DISCONNECTED
    assert rec.last_seen == T0
    assert [e.type for e in events] == [EventType.DISCONNECTION]
    assert "nas" in events[0].details


def test_timeout_exactly_at_threshold_is_not_stale(new_id):
    rec, events = classify_timeout(record(), T0 + TIMEOUT, TIMEOUT, new_id)
    assert events == []
    assert rec.status == ClientStatus.CONNECTED


def test_timeout_skips_already_disconnected(new_id):
    old = record(status=ClientStatus.DISCONNECTED)
    rec, events = classify_timeout(old, T0 + minutes(60), TIMEOUT, new_id)
    assert events == []
    assert rec is old


def test_downtime_never_negative():
    assert downtime_seconds(T0, T0 - minutes(1)) == 0
