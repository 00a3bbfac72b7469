"""Scan, registration, session and authentication services."""
from datetime import timedelta

import pytest

from conftest import BOOTH_MEETING, EVENT_ID, NOW, registration_row, session_row
from event_scanner.exceptions import (
    AttendeeNotFoundException,
    AuthenticationFailedException,
    DataValidationException,
    RemoteStoreException,
)
from event_scanner.models import ActionType, ScannerContext, ScanStatus
from event_scanner.repositories import OperatorRepository
from event_scanner.services import AuthenticationService, ScanService


def _seed(remote, sessions=None, registrations=None):
    remote.tables["sessions"] = sessions if sessions is not None else [session_row()]
    remote.tables["session_registrations"] = registrations or []


class BrokenScanStore:
    """Wraps a remote store and rejects scan_records writes."""

    def __init__(self, remote):
        self._remote = remote

    def __getattr__(self, name):
        return getattr(self._remote, name)

    def insert(self, table, row):
        if table == "scan_records":
            raise RemoteStoreException("insert", table, "quota exceeded")
        return self._remote.insert(table, row)


class TestRecordScan:
    def test_expected_scan_marks_attended_once(self, scan_service, remote, context):
        _seed(remote, registrations=[registration_row(expected_booth_id="B1")])

        first = scan_service.record_scan(context, "A1", booth_id="B1")
        second = scan_service.record_scan(context, "A1", booth_id="B1")

        assert first.success and second.success
        assert first.status == ScanStatus.EXPECTED
        assert first.details["marked_attended"] is True
        assert second.status == ScanStatus.EXPECTED
        assert "marked_attended" not in second.details
        assert len(remote.tables["scan_records"]) == 2
        assert remote.tables["session_registrations"][0]["status"] == "Attended"

    def test_scan_record_fields(self, scan_service, remote, context):
        _seed(remote)

        result = scan_service.record_scan(context, "A1", booth_id="B2", notes="lost badge")

        row = remote.tables["scan_records"][0]
        assert result.scan.id == row["id"]
        assert row["scan_status"] == "WALK_IN"
        assert row["session_id"] == "s1"
        assert row["operator_id"] == "op1"
        assert row["device_id"] == "device-1"
        assert row["notes"] == "lost badge"
        assert row["timestamp"] == NOW.isoformat()

    def test_out_of_schedule_scan_is_still_recorded(self, scan_service, remote, context):
        _seed(remote, sessions=[])

        result = scan_service.record_scan(context, "A1", booth_id="B1")

        assert result.success
        assert result.status == ScanStatus.OUT_OF_SCHEDULE
        assert remote.tables["scan_records"][0]["scan_type"] == "out_of_schedule"

    def test_wrong_booth(self, scan_service, remote, context):
        _seed(
            remote,
            sessions=[session_row(config=BOOTH_MEETING)],
            registrations=[registration_row(expected_booth_id="B7")],
        )

        result = scan_service.record_scan(context, "A1", booth_id="B9")

        assert result.status == ScanStatus.WRONG_BOOTH
        assert result.details["expected_booth_id"] == "B7"
        assert remote.tables["session_registrations"][0]["status"] == "Registered"

    def test_session_walk_in_is_auto_registered(self, scan_service, remote, context):
        _seed(remote)

        result = scan_service.record_scan(context, "A5", session_id="s1")

        assert result.status == ScanStatus.WALK_IN
        assert result.details["auto_registered"] is True
        rows = remote.tables["session_registrations"]
        assert len(rows) == 1
        assert rows[0]["attendee_id"] == "A5"
        assert rows[0]["status"] == "Attended"

    @pytest.mark.parametrize("event_id,attendee_id,booth_id,message", [
        ("", "A1", "B1", "No event selected."),
        (EVENT_ID, "", "B1", "Attendee ID is required."),
        (EVENT_ID, "A1", None, "Neither booth nor session specified."),
    ])
    def test_validation_failures(self, scan_service, remote, event_id, attendee_id, booth_id, message):
        context = ScannerContext("op1", event_id)

        result = scan_service.record_scan(context, attendee_id, booth_id=booth_id)

        assert not result.success
        assert result.message == message
        assert remote.tables["scan_records"] == []

    def test_persistence_failure_is_reported(self, remote, queue, session_service, monitor, clock, context):
        _seed(remote)
        service = ScanService(BrokenScanStore(remote), queue, session_service, monitor, clock)

        result = service.record_scan(context, "A1", booth_id="B1")

        assert not result.success
        assert result.message.startswith("Failed to save scan")
        assert queue.count() == 0

    def test_capacity_details(self, scan_service, remote, context):
        _seed(
            remote,
            sessions=[session_row(config={"has_capacity": True, "max_capacity": 1})],
            registrations=[registration_row(attendee_id="A2")],
        )

        result = scan_service.record_scan(context, "A1", booth_id="B1")

        assert result.details["capacity"] == {"limit": 1, "registered": 1, "reached": True}

    def test_cooldown_rejects_repeat_scans(self, remote, queue, session_service, monitor, clock, context):
        _seed(remote)
        service = ScanService(remote, queue, session_service, monitor, clock, cooldown_minutes=5)

        assert service.record_scan(context, "A1", booth_id="B1").success
        clock.advance(minutes=2)
        repeat = service.record_scan(context, "A1", booth_id="B1")
        clock.advance(minutes=5)
        later = service.record_scan(context, "A1", booth_id="B1")

        assert not repeat.success
        assert repeat.status == ScanStatus.EXPECTED
        assert repeat.details == {"duplicate": True}
        assert later.success
        assert len(remote.tables["scan_records"]) == 2


class TestOfflineScan:
    def test_offline_scan_is_queued_and_classified_from_cache(
        self, scan_service, session_service, remote, queue, context
    ):
        _seed(remote, registrations=[registration_row(expected_booth_id="B1")])
        session_service.load_sessions(EVENT_ID)
        session_service.load_registrations("A1", EVENT_ID)
        remote.available = False

        result = scan_service.record_scan(context, "A1", booth_id="B1")

        assert result.success
        assert result.was_offline
        assert result.status == ScanStatus.EXPECTED
        assert remote.tables["scan_records"] == []
        actions = list(queue.list_pending())
        assert len(actions) == 1
        assert actions[0].type == ActionType.SCAN
        assert actions[0].data["attended_registration_id"] == "r1"
        assert result.data["action_id"] == actions[0].id
        assert not scan_service.online

    def test_offline_repeat_scan_does_not_mark_again(self, scan_service, session_service, remote, queue, context):
        _seed(remote, registrations=[registration_row(expected_booth_id="B1")])
        session_service.load_sessions(EVENT_ID)
        session_service.load_registrations("A1", EVENT_ID)
        remote.available = False

        scan_service.record_scan(context, "A1", booth_id="B1")
        scan_service.record_scan(context, "A1", booth_id="B1")

        first, second = list(queue.list_pending())
        assert "attended_registration_id" in first.data
        assert "attended_registration_id" not in second.data

    def test_offline_without_cache_is_out_of_schedule(self, scan_service, remote, queue, context):
        remote.available = False

        result = scan_service.record_scan(context, "A1", booth_id="B1")

        assert result.success
        assert result.status == ScanStatus.OUT_OF_SCHEDULE
        assert queue.count() == 1

    def test_queued_scan_syncs_on_reconnect(
        self, scan_service, session_service, reconciler, monitor, remote, context
    ):
        _seed(remote, registrations=[registration_row(expected_booth_id="B1")])
        session_service.load_sessions(EVENT_ID)
        session_service.load_registrations("A1", EVENT_ID)
        remote.available = False
        scan_service.record_scan(context, "A1", booth_id="B1")

        remote.available = True
        monitor.check()

        assert len(remote.tables["scan_records"]) == 1
        assert remote.tables["session_registrations"][0]["status"] == "Attended"
        assert reconciler.queue.count() == 0

    def test_queued_scan_is_reclassified_on_sync(
        self, scan_service, session_service, reconciler, monitor, remote, context
    ):
        # Registrations were never looked up online, so the cache misses them
        _seed(remote, registrations=[registration_row(expected_booth_id="B1")])
        session_service.load_sessions(EVENT_ID)
        remote.available = False

        offline = scan_service.record_scan(context, "A1", booth_id="B1")
        assert offline.status == ScanStatus.WALK_IN

        remote.available = True
        monitor.check()

        row = remote.tables["scan_records"][0]
        assert row["scan_status"] == "EXPECTED"
        assert row["expected_booth_id"] == "B1"
        assert remote.tables["session_registrations"][0]["status"] == "Attended"
        assert reconciler.queue.count() == 0

    def test_delete_scan_requires_connection(self, scan_service, remote):
        remote.tables["scan_records"] = [{"id": "x"}]
        remote.available = False

        assert not scan_service.delete_scan("x").success

        remote.available = True
        scan_service.monitor.set_online(True)
        assert scan_service.delete_scan("x").success
        assert not scan_service.delete_scan("x").success


class TestRegistrations:
    def test_register_and_duplicate(self, registration_service, remote, context):
        _seed(remote)

        created = registration_service.register(context, "A1", "s1", expected_booth_id="B1")
        duplicate = registration_service.register(context, "A1", "s1")

        assert created.success
        assert created.data["expected_booth_id"] == "B1"
        assert not duplicate.success
        assert len(remote.tables["session_registrations"]) == 1

    def test_register_unknown_session(self, registration_service, remote, context):
        _seed(remote)

        assert not registration_service.register(context, "A1", "missing").success

    def test_register_enforces_capacity(self, registration_service, remote, context):
        _seed(
            remote,
            sessions=[session_row(config={"has_capacity": True, "max_capacity": 1})],
            registrations=[registration_row(attendee_id="A2")],
        )

        result = registration_service.register(context, "A1", "s1")

        assert not result.success
        assert result.message == "Session is full."

    def test_register_offline_queues_and_caches(self, registration_service, session_service, remote, queue, context):
        remote.available = False

        result = registration_service.register(context, "A1", "s1", expected_booth_id="B1")

        assert result.success
        assert result.data["queued"] is True
        assert queue.count() == 1
        assert session_service.cache.get_registrations("A1", EVENT_ID)[0].expected_booth_id == "B1"

    def test_cancel(self, registration_service, remote):
        remote.tables["session_registrations"] = [registration_row()]

        assert registration_service.cancel("r1").success
        assert remote.tables["session_registrations"] == []
        assert not registration_service.cancel("r1").success

    def test_check_in_online(self, registration_service, remote, context):
        remote.tables["event_attendees"] = [{"id": "ea1", "event_id": EVENT_ID, "attendee_id": "A1"}]

        result = registration_service.check_in(context, "A1")

        assert result.success
        assert remote.tables["event_attendees"][0]["checked_in_at"] == NOW.isoformat()

    def test_check_in_unknown_attendee(self, registration_service, remote, context):
        remote.tables["event_attendees"] = [{"id": "ea1", "event_id": EVENT_ID, "attendee_id": "A1"}]

        with pytest.raises(AttendeeNotFoundException) as error:
            registration_service.check_in(context, "nobody")

        assert error.value.attendee_id == "nobody"
        assert error.value.event_id == EVENT_ID

    def test_check_in_offline(self, registration_service, remote, queue, context):
        remote.available = False

        result = registration_service.check_in(context, "A1")

        assert result.success
        assert list(queue.list_pending())[0].type == ActionType.CHECK_IN


class TestSessionService:
    def test_active_session(self, session_service, remote, context):
        _seed(remote)

        status = session_service.active_session(context)

        assert status.status == "active"

    def test_list_sessions_sorted(self, session_service, remote, context):
        _seed(remote, sessions=[
            session_row(session_id="late", start=NOW + timedelta(hours=1), end=NOW + timedelta(hours=2)),
            session_row(session_id="early"),
        ])

        assert [s.id for s in session_service.list_sessions(context)] == ["early", "late"]

    def test_invalid_rows_are_skipped(self, session_service, remote):
        broken = session_row(session_id="broken")
        broken["end_time"] = "not a time"
        _seed(remote, sessions=[broken, session_row()])

        assert [s.id for s in session_service.load_sessions(EVENT_ID)] == ["s1"]

    def test_save_session_config_validates(self, session_service, remote):
        _seed(remote)

        invalid = session_service.save_session_config("s1", {"requires_pre_assignment": True, "allows_walk_ins": True})
        valid = session_service.save_session_config("s1", {"allows_walk_ins": False})
        missing = session_service.save_session_config("nope", {})

        assert not invalid.success
        assert invalid.data["errors"]
        assert valid.success
        assert remote.tables["sessions"][0]["config"]["allows_walk_ins"] is False
        assert not missing.success

    def test_offline_reads_come_from_cache(self, session_service, remote):
        _seed(remote)
        session_service.load_sessions(EVENT_ID)
        remote.available = False

        assert [s.id for s in session_service.load_sessions(EVENT_ID)] == ["s1"]


class TestAuthentication:
    def test_authenticate(self):
        service = AuthenticationService(OperatorRepository(initial_data={"op1": "secret"}))

        assert service.authenticate("op1", "secret").operator_id == "op1"
        with pytest.raises(AuthenticationFailedException):
            service.authenticate("op1", "wrong")
        with pytest.raises(AuthenticationFailedException):
            service.authenticate("", "")

    def test_invalid_operator_data(self):
        with pytest.raises(DataValidationException):
            AuthenticationService(OperatorRepository(initial_data={"op1": ""}))
