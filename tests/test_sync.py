"""Sync reconciler replay, backoff and reconnect behaviour."""
import threading
from datetime import timedelta

from conftest import EVENT_ID, NOW, registration_row, session_row
from event_scanner.exceptions import RemoteStoreException, RemoteUnavailableException
from event_scanner.models import ActionType
from event_scanner.offline import ConnectivityMonitor
from event_scanner.remote import InMemoryRemoteStore
from event_scanner.sync import SyncReconciler


class RecordingRemote(InMemoryRemoteStore):
    """In-memory remote that records writes and can fail per table."""

    def __init__(self, initial_data=None):
        super().__init__(initial_data)
        self.calls = []
        self.failing_tables = set()
        self.unavailable_tables = set()

    def _write(self, operation, table):
        self.calls.append((operation, table))
        if table in self.unavailable_tables:
            raise RemoteUnavailableException(table)
        if table in self.failing_tables:
            raise RemoteStoreException(operation, table, "rejected")

    def insert(self, table, row):
        self._write("insert", table)
        return super().insert(table, row)

    def update(self, table, match, changes):
        self._write("update", table)
        return super().update(table, match, changes)


def _remote():
    return RecordingRemote({
        "sessions": [session_row()],
        "event_attendees": [{"id": "ea1", "event_id": EVENT_ID, "attendee_id": "A1", "checked_in_at": None}],
        "session_registrations": [registration_row()],
        "scan_records": [],
    })


def _enqueue_three(queue):
    check_in = queue.enqueue(ActionType.CHECK_IN, {
        "event_id": EVENT_ID, "attendee_id": "A1", "checked_in_at": NOW.isoformat(),
    })
    scan = queue.enqueue(ActionType.SCAN, {
        "event_id": EVENT_ID, "attendee_id": "A1", "booth_id": "B1", "timestamp": NOW.isoformat(),
        "scan_status": "EXPECTED", "scan_type": "regular", "attended_registration_id": "r1",
    })
    registration = queue.enqueue(ActionType.REGISTRATION, registration_row(registration_id="r2", session_id="s2"))
    return check_in, scan, registration


def test_replays_in_order_and_isolates_failure(queue, clock):
    remote = _remote()
    remote.failing_tables.add("scan_records")
    reconciler = SyncReconciler(queue, remote, clock=clock)
    check_in, scan, registration = _enqueue_three(queue)

    report = reconciler.sync()

    assert remote.calls == [
        ("update", "event_attendees"),
        ("insert", "scan_records"),
        ("insert", "session_registrations"),
    ]
    assert report.succeeded == 2
    assert report.failed == 1
    assert report.purged == 2
    assert [a.id for a in queue.list_pending()] == [scan.id]
    assert queue.get(check_in.id) is None
    assert queue.get(registration.id) is None
    assert remote.tables["event_attendees"][0]["checked_in_at"] == NOW.isoformat()


def test_scan_replay_marks_registration_attended(queue, clock):
    remote = _remote()
    reconciler = SyncReconciler(queue, remote, clock=clock)
    _enqueue_three(queue)

    reconciler.sync()

    assert remote.tables["session_registrations"][0]["status"] == "Attended"
    assert "attended_registration_id" not in remote.tables["scan_records"][0]
    assert queue.count() == 0


def test_scan_replay_inserts_auto_registration(queue, clock):
    remote = _remote()
    reconciler = SyncReconciler(queue, remote, clock=clock)
    queue.enqueue(ActionType.SCAN, {
        "event_id": EVENT_ID, "attendee_id": "A9", "session_id": "s1", "timestamp": NOW.isoformat(),
        "scan_status": "WALK_IN", "auto_registration": registration_row(registration_id="auto", attendee_id="A9"),
    })

    reconciler.sync()

    assert any(row["id"] == "auto" for row in remote.tables["session_registrations"])


def test_failed_action_backs_off(queue, clock):
    remote = _remote()
    remote.failing_tables.add("scan_records")
    reconciler = SyncReconciler(queue, remote, clock=clock, backoff_base_seconds=30, backoff_max_seconds=900)
    _, scan, _ = _enqueue_three(queue)

    reconciler.sync()
    action = queue.get(scan.id)
    assert action.attempts == 1
    assert action.next_attempt_at == NOW + timedelta(seconds=30)
    assert action.last_error

    report = reconciler.sync()
    assert report.skipped == 1
    assert report.attempted == 0

    report = reconciler.sync(force=True)
    assert report.attempted == 1
    assert queue.get(scan.id).attempts == 2
    assert queue.get(scan.id).next_attempt_at == NOW + timedelta(seconds=60)


def test_backoff_delay_is_capped(queue):
    reconciler = SyncReconciler(queue, _remote(), backoff_base_seconds=30, backoff_max_seconds=900)

    assert reconciler.backoff_delay(1) == timedelta(seconds=30)
    assert reconciler.backoff_delay(3) == timedelta(seconds=120)
    assert reconciler.backoff_delay(10) == timedelta(seconds=900)


def test_exhausted_actions_stay_queued(queue, clock):
    remote = _remote()
    remote.failing_tables.add("scan_records")
    reconciler = SyncReconciler(queue, remote, clock=clock, max_attempts=2)
    scan = queue.enqueue(ActionType.SCAN, {"event_id": EVENT_ID, "attendee_id": "A1", "timestamp": NOW.isoformat()})

    reconciler.sync()
    clock.advance(seconds=30)
    reconciler.sync()
    clock.advance(minutes=5)
    report = reconciler.sync()

    assert report.exhausted == 1
    assert report.attempted == 0
    assert queue.get(scan.id).attempts == 2
    assert queue.count() == 1


def test_forced_sync_retries_exhausted_actions(queue, clock):
    remote = _remote()
    remote.failing_tables.add("scan_records")
    reconciler = SyncReconciler(queue, remote, clock=clock, max_attempts=1)
    scan = queue.enqueue(ActionType.SCAN, {"event_id": EVENT_ID, "attendee_id": "A1", "timestamp": NOW.isoformat()})
    reconciler.sync()
    assert reconciler.sync().exhausted == 1

    report = reconciler.sync(force=True)

    assert report.exhausted == 0
    assert report.failed == 1
    assert queue.get(scan.id).attempts == 1
    assert queue.get(scan.id).next_attempt_at == NOW + timedelta(seconds=30)

    remote.failing_tables.clear()
    report = reconciler.sync(force=True)

    assert report.succeeded == 1
    assert queue.count() == 0


def test_scan_is_reclassified_at_its_own_timestamp(queue, clock):
    remote = _remote()
    remote.tables["session_registrations"] = [registration_row(expected_booth_id="B1")]
    reconciler = SyncReconciler(queue, remote, clock=clock)
    queue.enqueue(ActionType.SCAN, {
        "event_id": EVENT_ID, "attendee_id": "A1", "booth_id": "B1", "timestamp": NOW.isoformat(),
        "scan_status": "WALK_IN", "scan_type": "regular",
    })
    clock.advance(hours=3)

    reconciler.sync()

    row = remote.tables["scan_records"][0]
    assert row["scan_status"] == "EXPECTED"
    assert row["session_id"] == "s1"
    assert remote.tables["session_registrations"][0]["status"] == "Attended"


def test_reclassified_wrong_booth_scan_does_not_mark_attended(queue, clock):
    remote = _remote()
    remote.tables["session_registrations"] = [registration_row(expected_booth_id="B2")]
    reconciler = SyncReconciler(queue, remote, clock=clock)
    queue.enqueue(ActionType.SCAN, {
        "event_id": EVENT_ID, "attendee_id": "A1", "booth_id": "B1", "timestamp": NOW.isoformat(),
        "scan_status": "EXPECTED", "scan_type": "regular", "attended_registration_id": "r1",
    })

    reconciler.sync()

    row = remote.tables["scan_records"][0]
    assert row["scan_status"] == "WRONG_BOOTH"
    assert row["expected_booth_id"] == "B2"
    assert remote.tables["session_registrations"][0]["status"] == "Registered"


def test_walk_in_registered_meanwhile_is_not_auto_registered(queue, clock):
    remote = _remote()
    reconciler = SyncReconciler(queue, remote, clock=clock)
    queue.enqueue(ActionType.SCAN, {
        "event_id": EVENT_ID, "attendee_id": "A1", "session_id": "s1", "timestamp": NOW.isoformat(),
        "scan_status": "WALK_IN", "auto_registration": registration_row(registration_id="auto"),
    })

    reconciler.sync()

    assert [row["id"] for row in remote.tables["session_registrations"]] == ["r1"]
    assert remote.tables["session_registrations"][0]["status"] == "Attended"
    assert remote.tables["scan_records"][0]["scan_status"] == "EXPECTED"


def test_connection_loss_leaves_rest_untouched(queue, clock):
    remote = _remote()
    remote.unavailable_tables.add("scan_records")
    monitor = ConnectivityMonitor(remote)
    reconciler = SyncReconciler(queue, remote, monitor, clock=clock)
    check_in, scan, registration = _enqueue_three(queue)

    report = reconciler.sync()

    assert report.succeeded == 1
    assert report.failed == 0
    assert report.message == "Connection lost during sync"
    assert not monitor.is_online
    assert queue.get(check_in.id) is None
    assert queue.get(scan.id).attempts == 0
    assert [a.id for a in queue.list_pending()] == [scan.id, registration.id]


def test_sync_while_syncing_is_noop(queue, clock):
    remote = _remote()
    nested = []
    reconciler = SyncReconciler(queue, remote, clock=clock)

    def reentrant_handler(remote_store, data):
        nested.append(reconciler.sync())

    reconciler.handlers[ActionType.CHECK_IN] = reentrant_handler
    queue.enqueue(ActionType.CHECK_IN, {"event_id": EVENT_ID, "attendee_id": "A1"})

    report = reconciler.sync()

    assert report.succeeded == 1
    assert nested[0].started is False
    assert nested[0].message == "Sync already in progress"
    assert not reconciler.is_syncing


def test_offline_sync_does_nothing(queue, clock):
    remote = _remote()
    monitor = ConnectivityMonitor(remote, online=False)
    reconciler = SyncReconciler(queue, remote, monitor, clock=clock)
    _enqueue_three(queue)

    report = reconciler.sync()

    assert report.started is False
    assert report.remaining == 3
    assert remote.calls == []


def test_reconnect_triggers_sync_and_refresh(queue, clock):
    remote = _remote()
    monitor = ConnectivityMonitor(remote, online=False)
    reconciler = SyncReconciler(queue, remote, monitor, clock=clock)
    refreshed = []
    reconciler.add_refresh_callback(lambda: refreshed.append(True))
    _enqueue_three(queue)

    monitor.set_online(True)

    assert queue.count() == 0
    assert refreshed == [True]


def test_concurrent_sync_requests_run_once(queue, clock):
    remote = _remote()
    reconciler = SyncReconciler(queue, remote, clock=clock)
    entered = threading.Event()
    release = threading.Event()

    def blocking_handler(remote_store, data):
        entered.set()
        release.wait(timeout=5)

    reconciler.handlers[ActionType.CHECK_IN] = blocking_handler
    queue.enqueue(ActionType.CHECK_IN, {"event_id": EVENT_ID, "attendee_id": "A1"})
    reports = []
    worker = threading.Thread(target=lambda: reports.append(reconciler.sync()))
    worker.start()
    assert entered.wait(timeout=5)

    concurrent = reconciler.sync()
    release.set()
    worker.join(timeout=5)

    assert concurrent.started is False
    assert reports[0].succeeded == 1
    assert queue.count() == 0
