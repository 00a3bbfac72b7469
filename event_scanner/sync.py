"""
Offline queue replay

The SyncReconciler replays queued actions against the remote store in
enqueue order. Each action commits on its own: a failure is recorded on
that action and the run moves on to the next one. Replay is
at-least-once, so an action that partially succeeded before a crash may
be sent again. Queued scans are classified again against the remote
store at their original timestamp before they are written.
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional

from .classifier import Classification, classify_booth_scan, classify_session_scan, walk_in_registration
from .exceptions import (
    DataAccessException,
    DataValidationException,
    RemoteStoreException,
    RemoteUnavailableException,
)
from .models import (
    ActionType,
    RegistrationStatus,
    Session,
    SessionRegistration,
    SyncReport,
    parse_timestamp,
    utcnow,
)
from .offline import ConnectivityMonitor, OfflineActionQueue
from .remote import RemoteStore
from .schedule import GRACE_PERIOD_MINUTES

logger = logging.getLogger(__name__)

ActionHandler = Callable[[RemoteStore, Dict], None]


class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"


def replay_registration(remote: RemoteStore, data: Dict) -> None:
    remote.insert("session_registrations", data)


def replay_check_in(remote: RemoteStore, data: Dict) -> None:
    match = {"event_id": data["event_id"], "attendee_id": data["attendee_id"]}
    updated = remote.update("event_attendees", match, {"checked_in_at": data["checked_in_at"]})
    if not updated:
        logger.warning(
            "Check-in replay for attendee %s matched no event_attendees row in event %s",
            data["attendee_id"], data["event_id"],
        )


def _load_rows(rows: List[Dict], model) -> List:
    models = []
    for row in rows:
        try:
            models.append(model.from_dict(row))
        except DataValidationException as e:
            logger.warning("Skipping invalid %s row %s during replay: %s", model.__name__, row.get("id"), e)
    return models


def reclassify_scan(remote: RemoteStore, row: Dict, grace_minutes: int = GRACE_PERIOD_MINUTES) -> Optional[Classification]:
    """
    Classify a queued scan again against the remote store

    The scan keeps its original timestamp, so the sessions that were
    running when the badge was scanned decide the outcome.

    Returns:
        Classification, or None if the payload lacks what classification needs
    """
    event_id = row.get("event_id")
    attendee_id = row.get("attendee_id")
    booth_id = row.get("booth_id")
    session_id = row.get("session_id")
    if not event_id or not attendee_id or not (booth_id or session_id):
        return None
    try:
        scanned_at = parse_timestamp(row.get("timestamp"))
    except DataValidationException:
        return None

    sessions = _load_rows(remote.select("sessions", event_id=event_id), Session)
    registrations = _load_rows(
        remote.select("session_registrations", attendee_id=attendee_id, event_id=event_id),
        SessionRegistration,
    )
    if booth_id:
        return classify_booth_scan(attendee_id, booth_id, registrations, sessions, scanned_at, grace_minutes)
    session = next((s for s in sessions if s.id == session_id), None)
    return classify_session_scan(attendee_id, session, registrations, sessions)


def replay_scan(remote: RemoteStore, data: Dict, grace_minutes: int = GRACE_PERIOD_MINUTES) -> None:
    row = dict(data)
    attended_registration_id = row.pop("attended_registration_id", None)
    auto_registration = row.pop("auto_registration", None)

    classification = reclassify_scan(remote, row, grace_minutes)
    if classification is not None:
        if classification.status.value != row.get("scan_status"):
            logger.info(
                "Queued scan for attendee %s reclassified from %s to %s",
                row.get("attendee_id"), row.get("scan_status"), classification.status.value,
            )
        row["scan_status"] = classification.status.value
        row["scan_type"] = classification.scan_type.value
        row["expected_booth_id"] = classification.expected_booth_id
        if classification.session is not None:
            row["session_id"] = classification.session.id

        registration = classification.registration
        attended_registration_id = registration.id if classification.marks_attended and registration else None
        if classification.auto_register and classification.session is not None:
            auto_registration = auto_registration or walk_in_registration(
                row["event_id"], row["attendee_id"], classification.session, parse_timestamp(row["timestamp"])
            )
        else:
            auto_registration = None

    remote.insert("scan_records", row)
    if attended_registration_id:
        remote.update(
            "session_registrations",
            {"id": attended_registration_id},
            {"status": RegistrationStatus.ATTENDED.value},
        )
    if auto_registration:
        remote.insert("session_registrations", auto_registration)


DEFAULT_HANDLERS: Dict[ActionType, ActionHandler] = {
    ActionType.REGISTRATION: replay_registration,
    ActionType.CHECK_IN: replay_check_in,
    ActionType.SCAN: replay_scan,
}


class SyncReconciler:
    """
    Replays the offline queue when connectivity returns

    Only one sync runs at a time; a request arriving while a sync is in
    progress returns immediately without queuing another run. Failed
    actions are retried with exponential backoff until ``max_attempts``;
    a forced sync resets exhausted actions and tries them again.
    """

    def __init__(
        self,
        queue: OfflineActionQueue,
        remote: RemoteStore,
        monitor: Optional[ConnectivityMonitor] = None,
        handlers: Optional[Dict[ActionType, ActionHandler]] = None,
        max_attempts: int = 5,
        backoff_base_seconds: float = 30,
        backoff_max_seconds: float = 900,
        clock: Callable[[], datetime] = utcnow,
        grace_minutes: int = GRACE_PERIOD_MINUTES,
    ):
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.handlers = dict(DEFAULT_HANDLERS)
        self.handlers[ActionType.SCAN] = partial(replay_scan, grace_minutes=grace_minutes)
        if handlers:
            self.handlers.update(handlers)
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.clock = clock
        self.state = SyncState.IDLE
        self._state_lock = threading.Lock()
        self._refresh_callbacks: List[Callable[[], None]] = []

        if monitor is not None:
            monitor.add_listener(self.sync)

    @property
    def is_syncing(self) -> bool:
        return self.state == SyncState.SYNCING

    def add_refresh_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback that refreshes cached read views after a sync"""
        self._refresh_callbacks.append(callback)

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before the next retry of an action that has failed ``attempts`` times"""
        seconds = self.backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.backoff_max_seconds))

    def sync(self, force: bool = False) -> SyncReport:
        """
        Replay every pending action once

        Args:
            force: Ignore backoff schedules and retry exhausted actions ("sync now")

        Returns:
            SyncReport describing what happened; never raises
        """
        with self._state_lock:
            if self.is_syncing:
                logger.info("Sync already in progress, ignoring request")
                return SyncReport(started=False, message="Sync already in progress")
            if self.monitor is not None and not self.monitor.is_online:
                return SyncReport(started=False, remaining=self.queue.count(), message="Offline")
            self.state = SyncState.SYNCING

        report = SyncReport(started=True)
        try:
            self._replay(report, force)
            report.purged = self.queue.purge_synced()
            if report.succeeded:
                self._refresh()
            report.remaining = self.queue.count()
            if not report.message:
                report.message = f"{report.succeeded} action(s) synced, {report.failed} failed"
        except DataAccessException as e:
            logger.error("Sync aborted by local store failure: %s", e)
            report.message = f"Sync aborted: {e}"
        finally:
            self.state = SyncState.IDLE

        logger.info(
            "Sync complete: %d succeeded, %d failed, %d skipped, %d exhausted",
            report.succeeded, report.failed, report.skipped, report.exhausted,
        )
        return report

    def _replay(self, report: SyncReport, force: bool) -> None:
        now = self.clock()
        for action in self.queue.list_pending():
            if action.attempts >= self.max_attempts:
                if not force:
                    report.exhausted += 1
                    continue
                self.queue.requeue(action.id)
                action.attempts = 0
            if not force and not action.is_due(now):
                report.skipped += 1
                continue

            handler = self.handlers.get(action.type)
            report.attempted += 1
            try:
                if handler is None:
                    raise RemoteStoreException("replay", action.type.value, "no handler for action type")
                handler(self.remote, action.data)
            except RemoteUnavailableException as e:
                # Leave this action and everything after it untouched
                logger.warning("Connection lost during sync at action %s: %s", action.id, e)
                report.attempted -= 1
                report.message = "Connection lost during sync"
                if self.monitor is not None:
                    self.monitor.mark_offline()
                return
            except Exception as e:
                report.failed += 1
                retry_at = now + self.backoff_delay(action.attempts + 1)
                self.queue.record_failure(action.id, str(e), retry_at)
                logger.error("Failed to sync %s action %s: %s", action.type.value, action.id, e)
                continue

            self.queue.mark_synced(action.id)
            report.succeeded += 1
            logger.debug("Synced %s action %s", action.type.value, action.id)

    def _refresh(self) -> None:
        for callback in self._refresh_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Refreshing cached views after sync failed")
