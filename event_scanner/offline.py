"""
Offline support: pending action queue, read caches and connectivity

While the remote store is unreachable, mutating actions (scans,
registrations, check-ins) are appended to a durable local queue and
replayed later by the sync reconciler. Sessions and registrations are
cached locally so scans can still be classified offline.
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Union

from .exceptions import DataValidationException
from .models import (
    ActionType,
    PendingAction,
    Session,
    SessionRegistration,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from .repositories import LocalStore

logger = logging.getLogger(__name__)

ACTIONS_TABLE = "pending_actions"
META_TABLE = "queue_meta"
SESSIONS_TABLE = "cached_sessions"
REGISTRATIONS_TABLE = "cached_registrations"

CACHE_EXPIRATION_HOURS = 24


class PendingActionView:
    """
    Restartable view over unsynced actions, oldest first

    Each iteration re-reads the store, so a view taken before a sync
    reflects the queue as it is when iterated.
    """

    def __init__(self, queue: 'OfflineActionQueue'):
        self._queue = queue

    def __iter__(self) -> Iterator[PendingAction]:
        actions = [a for a in self._queue._load_all() if not a.synced]
        actions.sort(key=lambda a: (a.timestamp, a.sequence))
        for action in actions:
            yield action

    def __len__(self) -> int:
        return self._queue.count()


class OfflineActionQueue:
    """
    Durable, append-only queue of actions recorded while offline

    An action stays visible to ``list_pending`` until it is explicitly
    marked synced; synced actions are removed by ``purge_synced``.
    """

    def __init__(self, store: LocalStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock
        # Serializes read-modify-write cycles on queued records
        self._lock = threading.RLock()

    def _load_all(self) -> List[PendingAction]:
        actions = []
        for key, record in self.store.items(ACTIONS_TABLE):
            try:
                actions.append(PendingAction.from_dict(record))
            except DataValidationException as e:
                logger.warning("Skipping malformed queued action %s: %s", key, e)
        return actions

    def _next_sequence(self) -> int:
        meta = self.store.get(META_TABLE, "sequence") or {"value": 0}
        value = int(meta["value"]) + 1
        self.store.put(META_TABLE, "sequence", {"value": value})
        return value

    def enqueue(self, action_type: Union[ActionType, str], data: Dict) -> PendingAction:
        """
        Store a new unsynced action

        Args:
            action_type: check-in, registration or scan
            data: Payload in the shape of the target remote table

        Returns:
            The stored PendingAction

        Raises:
            DataValidationException: If the type is unknown or data is not a dict
        """
        try:
            action_type = ActionType(action_type)
        except ValueError:
            raise DataValidationException("action.type", f"unknown action type '{action_type}'")
        if not isinstance(data, dict):
            raise DataValidationException("action.data", "payload must be a dictionary")

        with self._lock:
            action = PendingAction(
                id=f"{action_type.value}_{uuid.uuid4().hex}",
                type=action_type,
                data=data,
                timestamp=self.clock(),
                sequence=self._next_sequence(),
            )
            self.store.put(ACTIONS_TABLE, action.id, action.to_dict())
        logger.info("Queued %s action %s", action.type.value, action.id)
        return action

    def count(self) -> int:
        """Number of unsynced actions"""
        return sum(1 for a in self._load_all() if not a.synced)

    def list_pending(self) -> PendingActionView:
        """Unsynced actions ordered by timestamp, oldest first"""
        return PendingActionView(self)

    def get(self, action_id: str) -> Optional[PendingAction]:
        record = self.store.get(ACTIONS_TABLE, action_id)
        return PendingAction.from_dict(record) if record else None

    def _save(self, action: PendingAction) -> None:
        self.store.put(ACTIONS_TABLE, action.id, action.to_dict())

    def mark_synced(self, action_id: str) -> bool:
        """
        Flag one action as synced

        Returns:
            False if the action does not exist
        """
        with self._lock:
            action = self.get(action_id)
            if action is None:
                return False
            action.synced = True
            action.last_error = None
            self._save(action)
        logger.debug("Marked action %s as synced", action_id)
        return True

    def record_failure(self, action_id: str, error: str, next_attempt_at: Optional[datetime] = None) -> Optional[PendingAction]:
        """Count a failed replay attempt and schedule the next one"""
        with self._lock:
            action = self.get(action_id)
            if action is None:
                return None
            action.attempts += 1
            action.last_error = error
            action.next_attempt_at = next_attempt_at
            self._save(action)
            return action

    def requeue(self, action_id: str) -> Optional[PendingAction]:
        """Reset the retry state of an action so the next sync replays it"""
        with self._lock:
            action = self.get(action_id)
            if action is None or action.synced:
                return None
            action.attempts = 0
            action.next_attempt_at = None
            self._save(action)
        logger.info("Requeued action %s", action_id)
        return action

    def purge_synced(self) -> int:
        """
        Delete every synced action

        Returns:
            Number of actions removed
        """
        removed = 0
        with self._lock:
            for action in self._load_all():
                if action.synced and self.store.delete(ACTIONS_TABLE, action.id):
                    removed += 1
        if removed:
            logger.info("Cleared %d synced actions", removed)
        return removed

    def clear(self) -> int:
        """Drop every queued action, synced or not"""
        with self._lock:
            self.store.clear(META_TABLE)
            return self.store.clear(ACTIONS_TABLE)


class OfflineCache:
    """
    Local read caches of sessions and registrations

    Entries expire after ``expiration_hours`` so stale schedules are not
    used for classification indefinitely.
    """

    def __init__(
        self,
        store: LocalStore,
        clock: Callable[[], datetime] = utcnow,
        expiration_hours: int = CACHE_EXPIRATION_HOURS,
    ):
        self.store = store
        self.clock = clock
        self.expiration = timedelta(hours=expiration_hours)

    def save_sessions(self, sessions: List[Session]) -> None:
        cached_at = format_timestamp(self.clock())
        for session in sessions:
            self.store.put(SESSIONS_TABLE, session.id, {"session": session.to_dict(), "cached_at": cached_at})
        logger.debug("Cached %d sessions", len(sessions))

    def get_sessions(self, event_id: str) -> List[Session]:
        sessions = []
        for key, entry in self.store.items(SESSIONS_TABLE):
            try:
                session = Session.from_dict(entry["session"])
            except (DataValidationException, KeyError) as e:
                logger.warning("Skipping malformed cached session %s: %s", key, e)
                continue
            if session.event_id == event_id:
                sessions.append(session)
        return sessions

    def event_ids(self) -> List[str]:
        """Events that have cached sessions"""
        ids = set()
        for _, entry in self.store.items(SESSIONS_TABLE):
            event_id = (entry.get("session") or {}).get("event_id")
            if event_id:
                ids.add(str(event_id))
        return sorted(ids)

    def save_registrations(self, registrations: List[SessionRegistration]) -> None:
        cached_at = format_timestamp(self.clock())
        for registration in registrations:
            self.store.put(
                REGISTRATIONS_TABLE,
                registration.id,
                {"registration": registration.to_dict(), "cached_at": cached_at},
            )
        logger.debug("Cached %d registrations", len(registrations))

    def remove_registration(self, registration_id: str) -> bool:
        return self.store.delete(REGISTRATIONS_TABLE, registration_id)

    def get_registrations(self, attendee_id: str, event_id: Optional[str] = None) -> List[SessionRegistration]:
        registrations = []
        for key, entry in self.store.items(REGISTRATIONS_TABLE):
            try:
                registration = SessionRegistration.from_dict(entry["registration"])
            except (DataValidationException, KeyError) as e:
                logger.warning("Skipping malformed cached registration %s: %s", key, e)
                continue
            if registration.attendee_id != attendee_id:
                continue
            if event_id is not None and registration.event_id != event_id:
                continue
            registrations.append(registration)
        return registrations

    def remove_expired(self) -> Dict[str, int]:
        """Delete cache entries older than the expiration window"""
        cutoff = self.clock() - self.expiration
        removed = {}
        for table in (SESSIONS_TABLE, REGISTRATIONS_TABLE):
            count = 0
            for key, entry in self.store.items(table):
                try:
                    cached_at = parse_timestamp(entry.get("cached_at"), "cached_at")
                except DataValidationException:
                    cached_at = None
                if cached_at is None or cached_at < cutoff:
                    self.store.delete(table, key)
                    count += 1
            removed[table] = count
        logger.info(
            "Removed expired cache: %d sessions, %d registrations",
            removed[SESSIONS_TABLE], removed[REGISTRATIONS_TABLE],
        )
        return removed

    def clear(self) -> None:
        self.store.clear(SESSIONS_TABLE)
        self.store.clear(REGISTRATIONS_TABLE)

    def info(self) -> Dict[str, int]:
        return {
            "sessions": sum(1 for _ in self.store.items(SESSIONS_TABLE)),
            "registrations": sum(1 for _ in self.store.items(REGISTRATIONS_TABLE)),
        }


class ConnectivityMonitor:
    """
    Tracks whether the remote store is reachable

    Listeners are called on every offline-to-online transition; the sync
    reconciler registers itself here to replay the queue on reconnect.
    """

    def __init__(self, remote=None, online: bool = True):
        self.remote = remote
        self._online = online
        self._listeners: List[Callable[[], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connection restored")
            for callback in list(self._listeners):
                try:
                    callback()
                except Exception:
                    logger.exception("Reconnect listener failed")
        elif was_online and not online:
            logger.warning("Connection lost")

    def mark_offline(self) -> None:
        self.set_online(False)

    def check(self) -> bool:
        """Probe the remote store and update the online state"""
        if self.remote is None:
            return self._online
        try:
            reachable = bool(self.remote.ping())
        except Exception as e:
            logger.warning("Connectivity probe failed: %s", e)
            reachable = False
        self.set_online(reachable)
        return reachable
