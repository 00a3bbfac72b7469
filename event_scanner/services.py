"""
Business Logic Services for Event Scanner

This module contains the service classes behind the scanner endpoints:
operator authentication, session lookups, scan recording and
registration management. Fallible operations return an OperationResult
(or ScanResult); only failed logins and unknown attendees raise, for the
app to map to HTTP errors. When the remote store is unreachable, mutating
operations fall back to the offline queue.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .classifier import Classification, classify_booth_scan, classify_session_scan, walk_in_registration
from .exceptions import (
    AttendeeNotFoundException,
    AuthenticationFailedException,
    DataValidationException,
    EventScannerException,
    RemoteStoreException,
    RemoteUnavailableException,
)
from .models import (
    ActionType,
    OperationResult,
    Operator,
    RegistrationStatus,
    ScannerContext,
    ScanRecord,
    ScanResult,
    ScanStatus,
    Session,
    SessionConfig,
    SessionRegistration,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from .offline import ConnectivityMonitor, OfflineActionQueue, OfflineCache
from .remote import RemoteStore
from .repositories import OperatorRepository
from .schedule import GRACE_PERIOD_MINUTES, SessionWindowStatus, session_window_status

logger = logging.getLogger(__name__)


class AuthenticationService:
    """
    Handles operator authentication

    Operators are the check-in staff allowed to run a scanner.
    """

    def __init__(self, operator_repository: OperatorRepository):
        """
        Initialize authentication service

        Args:
            operator_repository: Repository for operator credentials
        """
        self.operator_repository = operator_repository
        self._operators: Dict[str, Operator] = {}
        self._load_operators()

    def _load_operators(self) -> None:
        """
        Load operators from repository

        Raises:
            DataValidationException: If operator data is invalid
        """
        self._operators = {}
        for operator_id, password in self.operator_repository.load_data().items():
            if not isinstance(operator_id, str) or not isinstance(password, str):
                raise DataValidationException(
                    "operator_credentials",
                    f"Invalid credentials format for {operator_id}"
                )
            if not operator_id.strip() or not password.strip():
                raise DataValidationException(
                    "operator_credentials",
                    f"Empty operator ID or password for {operator_id}"
                )
            self._operators[operator_id] = Operator(operator_id, password)

    def authenticate(self, operator_id: str, password: str) -> Operator:
        """
        Authenticate operator credentials

        Returns:
            The authenticated Operator

        Raises:
            AuthenticationFailedException: If authentication fails
        """
        if not operator_id or not password:
            raise AuthenticationFailedException()

        operator = self._operators.get(operator_id)
        if operator is None or not operator.verify_password(password):
            raise AuthenticationFailedException(operator_id)
        return operator

    def is_valid_operator(self, operator_id: str) -> bool:
        return operator_id in self._operators


class RemoteBackedService:
    """Shared plumbing for services that read through the remote store"""

    def __init__(
        self,
        remote: RemoteStore,
        monitor: Optional[ConnectivityMonitor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.remote = remote
        self.monitor = monitor
        self.clock = clock

    @property
    def online(self) -> bool:
        return self.monitor.is_online if self.monitor is not None else True

    def _went_offline(self, error: RemoteUnavailableException) -> None:
        logger.warning("Remote store unreachable, switching to offline mode: %s", error)
        if self.monitor is not None:
            self.monitor.mark_offline()

    def _rows_to_models(self, rows: List[Dict], model) -> List:
        models = []
        for row in rows:
            try:
                models.append(model.from_dict(row))
            except DataValidationException as e:
                logger.warning("Skipping invalid %s row %s: %s", model.__name__, row.get("id"), e)
        return models


class SessionService(RemoteBackedService):
    """
    Session schedule and registration lookups

    Reads go to the remote store when online and refresh the offline
    cache; when offline they are served from the cache.
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: OfflineCache,
        monitor: Optional[ConnectivityMonitor] = None,
        clock: Callable[[], datetime] = utcnow,
        grace_minutes: int = GRACE_PERIOD_MINUTES,
    ):
        super().__init__(remote, monitor, clock)
        self.cache = cache
        self.grace_minutes = grace_minutes

    def load_sessions(self, event_id: str) -> List[Session]:
        """
        Sessions of an event, from the remote store or the offline cache

        Raises:
            RemoteStoreException: If the remote read fails for a reason
                other than unreachability
        """
        if self.online:
            try:
                sessions = self._rows_to_models(self.remote.select("sessions", event_id=event_id), Session)
                self.cache.save_sessions(sessions)
                return sessions
            except RemoteUnavailableException as e:
                self._went_offline(e)
        return self.cache.get_sessions(event_id)

    def load_registrations(self, attendee_id: str, event_id: str) -> List[SessionRegistration]:
        """An attendee's registrations in an event"""
        if self.online:
            try:
                rows = self.remote.select("session_registrations", attendee_id=attendee_id, event_id=event_id)
                registrations = self._rows_to_models(rows, SessionRegistration)
                self.cache.save_registrations(registrations)
                return registrations
            except RemoteUnavailableException as e:
                self._went_offline(e)
        return self.cache.get_registrations(attendee_id, event_id)

    def find_session(self, event_id: str, session_id: str) -> Optional[Session]:
        for session in self.load_sessions(event_id):
            if session.id == session_id:
                return session
        return None

    def list_sessions(self, context: ScannerContext) -> List[Session]:
        return sorted(self.load_sessions(context.event_id), key=lambda s: (s.start_time, s.id))

    def active_session(self, context: ScannerContext, now: Optional[datetime] = None) -> SessionWindowStatus:
        """Session that is active, starting soon or ending soon for the event"""
        return session_window_status(self.load_sessions(context.event_id), now or self.clock(), self.grace_minutes)

    def save_session_config(self, session_id: str, config_data: Dict) -> OperationResult:
        """
        Validate and store a session's scanning configuration

        Args:
            session_id: Session to update
            config_data: Config object as sent by the organizer

        Returns:
            OperationResult; failures list the validation problems
        """
        try:
            config = SessionConfig.from_dict(config_data)
        except (DataValidationException, TypeError, ValueError) as e:
            return OperationResult(False, str(e))

        errors = config.validate()
        if errors:
            return OperationResult(False, "Invalid session configuration", {"errors": errors})

        try:
            updated = self.remote.update("sessions", {"id": session_id}, {"config": config.to_dict()})
        except RemoteStoreException as e:
            logger.error("Failed to save config for session %s: %s", session_id, e)
            return OperationResult(False, f"Failed to save session configuration: {e.details}")

        if not updated:
            return OperationResult(False, f"Session '{session_id}' not found")
        return OperationResult(True, "Session configuration saved", {"config": config.to_dict()})

    def refresh_event_cache(self, event_id: str) -> None:
        """Reload an event's sessions and registrations into the offline cache"""
        sessions = self._rows_to_models(self.remote.select("sessions", event_id=event_id), Session)
        registrations = self._rows_to_models(
            self.remote.select("session_registrations", event_id=event_id), SessionRegistration
        )
        self.cache.save_sessions(sessions)
        self.cache.save_registrations(registrations)

    def refresh_cached_events(self) -> None:
        for event_id in self.cache.event_ids():
            self.refresh_event_cache(event_id)


class ScanService(RemoteBackedService):
    """
    Records and classifies attendee scans

    Online, a scan is classified against live data, written to
    ``scan_records``, and a matching registration is moved to Attended.
    Offline, it is classified against the local cache and queued.
    """

    def __init__(
        self,
        remote: RemoteStore,
        queue: OfflineActionQueue,
        sessions: SessionService,
        monitor: Optional[ConnectivityMonitor] = None,
        clock: Callable[[], datetime] = utcnow,
        cooldown_minutes: int = 0,
    ):
        super().__init__(remote, monitor, clock)
        self.queue = queue
        self.sessions = sessions
        self.cooldown_minutes = cooldown_minutes

    def record_scan(
        self,
        context: ScannerContext,
        attendee_id: str,
        booth_id: Optional[str] = None,
        session_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ScanResult:
        """
        Record a scan at a booth or a session

        Args:
            context: Operator, event and device doing the scan
            attendee_id: Attendee whose badge was scanned
            booth_id: Booth scanner, if scanning at a booth
            session_id: Session scanner, if scanning a session directly
            notes: Free-text notes stored with the scan

        Returns:
            ScanResult; never raises
        """
        if not context.event_id:
            return ScanResult(False, "No event selected.")
        if not attendee_id:
            return ScanResult(False, "Attendee ID is required.")
        if not booth_id and not session_id:
            return ScanResult(False, "Neither booth nor session specified.")

        now = self.clock()
        try:
            if self.online:
                try:
                    return self._record_online(context, attendee_id, booth_id, session_id, notes, now)
                except RemoteUnavailableException as e:
                    self._went_offline(e)
            return self._record_offline(context, attendee_id, booth_id, session_id, notes, now)
        except RemoteStoreException as e:
            logger.error("Scan for attendee %s failed: %s", attendee_id, e)
            return ScanResult(False, f"Failed to save scan: {e.details}")
        except EventScannerException as e:
            logger.error("Scan for attendee %s failed: %s", attendee_id, e)
            return ScanResult(False, str(e))
        except Exception:
            logger.exception("Unexpected error recording scan for attendee %s", attendee_id)
            return ScanResult(False, "Unexpected error while recording scan.")

    def _classify(
        self,
        attendee_id: str,
        booth_id: Optional[str],
        session_id: Optional[str],
        sessions: List[Session],
        registrations: List[SessionRegistration],
        now: datetime,
    ) -> Classification:
        if booth_id:
            if session_id:
                sessions = [s for s in sessions if s.id == session_id]
            return classify_booth_scan(
                attendee_id, booth_id, registrations, sessions, now, self.sessions.grace_minutes
            )
        session = next((s for s in sessions if s.id == session_id), None)
        return classify_session_scan(attendee_id, session, registrations, sessions)

    def _build_scan(
        self,
        context: ScannerContext,
        attendee_id: str,
        booth_id: Optional[str],
        session_id: Optional[str],
        classification: Classification,
        notes: Optional[str],
        now: datetime,
    ) -> ScanRecord:
        return ScanRecord(
            id=None,
            event_id=context.event_id,
            attendee_id=attendee_id,
            booth_id=booth_id,
            session_id=classification.session.id if classification.session else session_id,
            timestamp=now,
            scan_status=classification.status,
            scan_type=classification.scan_type,
            expected_booth_id=classification.expected_booth_id,
            device_id=context.device_id,
            operator_id=context.operator_id,
            notes=notes,
        )

    def _auto_registration(self, context: ScannerContext, attendee_id: str, session: Session, now: datetime) -> Dict:
        return walk_in_registration(context.event_id, attendee_id, session, now)

    def _is_duplicate(
        self, attendee_id: str, booth_id: Optional[str], session_id: Optional[str], now: datetime
    ) -> bool:
        if self.cooldown_minutes <= 0:
            return False
        match = {"attendee_id": attendee_id}
        if booth_id:
            match["booth_id"] = booth_id
        else:
            match["session_id"] = session_id
        cutoff = now - timedelta(minutes=self.cooldown_minutes)
        for row in self.remote.select("scan_records", **match):
            try:
                if parse_timestamp(row.get("timestamp")) >= cutoff:
                    return True
            except DataValidationException:
                continue
        return False

    def _capacity_details(self, session: Session, booth_id: Optional[str]) -> Optional[Dict]:
        limit = session.capacity_for(booth_id)
        if not limit:
            return None
        match = {"session_id": session.id}
        if booth_id and booth_id in session.booth_capacities:
            match["expected_booth_id"] = booth_id
        try:
            rows = self.remote.select("session_registrations", **match)
        except RemoteStoreException as e:
            logger.warning("Could not count registrations for session %s: %s", session.id, e)
            return None
        registered = sum(1 for row in rows if row.get("status") != RegistrationStatus.CANCELLED.value)
        return {"limit": limit, "registered": registered, "reached": registered >= limit}

    def _record_online(
        self,
        context: ScannerContext,
        attendee_id: str,
        booth_id: Optional[str],
        session_id: Optional[str],
        notes: Optional[str],
        now: datetime,
    ) -> ScanResult:
        if self._is_duplicate(attendee_id, booth_id, session_id, now):
            location = "booth" if booth_id else "session"
            return ScanResult(
                False,
                f"Frequent scan: {attendee_id} was already scanned at this {location} recently.",
                status=ScanStatus.EXPECTED,
                details={"duplicate": True},
            )

        sessions = self.sessions.load_sessions(context.event_id)
        registrations = self.sessions.load_registrations(attendee_id, context.event_id)
        classification = self._classify(attendee_id, booth_id, session_id, sessions, registrations, now)
        scan = self._build_scan(context, attendee_id, booth_id, session_id, classification, notes, now)

        stored = ScanRecord.from_dict(self.remote.insert("scan_records", scan.to_dict()))
        details = classification.details()

        registration = classification.registration
        if classification.marks_attended and registration is not None:
            try:
                self.remote.update(
                    "session_registrations",
                    {"id": registration.id},
                    {"status": RegistrationStatus.ATTENDED.value},
                )
                registration.status = RegistrationStatus.ATTENDED
                self.sessions.cache.save_registrations([registration])
                details["marked_attended"] = True
            except RemoteStoreException as e:
                logger.warning("Scan %s saved but registration %s not updated: %s", stored.id, registration.id, e)
                details["marked_attended"] = False

        if classification.auto_register and classification.session is not None:
            row = self._auto_registration(context, attendee_id, classification.session, now)
            try:
                self.remote.insert("session_registrations", row)
                self.sessions.cache.save_registrations([SessionRegistration.from_dict(row)])
                details["auto_registered"] = True
            except RemoteStoreException as e:
                logger.warning("Walk-in %s not auto-registered: %s", attendee_id, e)
                details["auto_registered"] = False

        if classification.session is not None:
            capacity = self._capacity_details(classification.session, booth_id)
            if capacity is not None:
                details["capacity"] = capacity

        logger.info("Scan %s for attendee %s classified %s", stored.id, attendee_id, classification.status.value)
        return ScanResult(
            True,
            f"{attendee_id} - {classification.message}",
            status=classification.status,
            scan=stored,
            details=details,
        )

    def _record_offline(
        self,
        context: ScannerContext,
        attendee_id: str,
        booth_id: Optional[str],
        session_id: Optional[str],
        notes: Optional[str],
        now: datetime,
    ) -> ScanResult:
        cache = self.sessions.cache
        sessions = cache.get_sessions(context.event_id)
        registrations = cache.get_registrations(attendee_id, context.event_id)
        classification = self._classify(attendee_id, booth_id, session_id, sessions, registrations, now)
        scan = self._build_scan(context, attendee_id, booth_id, session_id, classification, notes, now)

        payload = scan.to_dict()
        registration = classification.registration
        if classification.marks_attended and registration is not None:
            payload["attended_registration_id"] = registration.id
            registration.status = RegistrationStatus.ATTENDED
            cache.save_registrations([registration])
        if classification.auto_register and classification.session is not None:
            row = self._auto_registration(context, attendee_id, classification.session, now)
            payload["auto_registration"] = row
            cache.save_registrations([SessionRegistration.from_dict(row)])

        action = self.queue.enqueue(ActionType.SCAN, payload)
        return ScanResult(
            True,
            f"Offline: scan for {attendee_id} saved locally.",
            data={"action_id": action.id},
            status=classification.status,
            scan=scan,
            details=classification.details(),
            was_offline=True,
        )

    def delete_scan(self, scan_id: str) -> OperationResult:
        if not self.online:
            return OperationResult(False, "Scans cannot be deleted while offline.")
        try:
            removed = self.remote.delete("scan_records", {"id": scan_id})
        except RemoteUnavailableException as e:
            self._went_offline(e)
            return OperationResult(False, "Scans cannot be deleted while offline.")
        except RemoteStoreException as e:
            return OperationResult(False, f"Failed to delete scan: {e.details}")
        if not removed:
            return OperationResult(False, f"Scan '{scan_id}' not found.")
        return OperationResult(True, "Scan deleted successfully.")

    def list_scans(self, context: ScannerContext) -> List[ScanRecord]:
        """
        Scans of the event, oldest first

        Raises:
            RemoteStoreException: If the remote read fails
        """
        scans = self._rows_to_models(self.remote.select("scan_records", event_id=context.event_id), ScanRecord)
        return sorted(scans, key=lambda s: s.timestamp)


class RegistrationService(RemoteBackedService):
    """
    Session registrations and desk check-ins

    Registrations and check-ins made offline are queued and cached so
    that later offline scans already see them.
    """

    def __init__(
        self,
        remote: RemoteStore,
        queue: OfflineActionQueue,
        sessions: SessionService,
        monitor: Optional[ConnectivityMonitor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(remote, monitor, clock)
        self.queue = queue
        self.sessions = sessions

    def _queue(self, action_type: ActionType, data: Dict, message: str) -> OperationResult:
        action = self.queue.enqueue(action_type, data)
        return OperationResult(True, message, {"queued": True, "action_id": action.id, **data})

    def register(
        self,
        context: ScannerContext,
        attendee_id: str,
        session_id: str,
        expected_booth_id: Optional[str] = None,
    ) -> OperationResult:
        """
        Register an attendee for a session, optionally at a booth

        Returns:
            OperationResult with the registration row in ``data``
        """
        if not context.event_id or not attendee_id or not session_id:
            return OperationResult(False, "Event, attendee and session are required.")

        row = {
            "id": str(uuid.uuid4()),
            "event_id": context.event_id,
            "session_id": session_id,
            "attendee_id": attendee_id,
            "expected_booth_id": expected_booth_id,
            "status": RegistrationStatus.REGISTERED.value,
            "registration_time": format_timestamp(self.clock()),
        }

        try:
            if self.online:
                try:
                    return self._register_online(context, row)
                except RemoteUnavailableException as e:
                    self._went_offline(e)
            self.sessions.cache.save_registrations([SessionRegistration.from_dict(row)])
            return self._queue(ActionType.REGISTRATION, row, "Offline: registration saved locally.")
        except RemoteStoreException as e:
            logger.error("Registration of %s for session %s failed: %s", attendee_id, session_id, e)
            return OperationResult(False, f"Failed to register: {e.details}")
        except EventScannerException as e:
            return OperationResult(False, str(e))

    def _register_online(self, context: ScannerContext, row: Dict) -> OperationResult:
        existing = self.remote.select(
            "session_registrations", session_id=row["session_id"], attendee_id=row["attendee_id"]
        )
        if any(r.get("status") != RegistrationStatus.CANCELLED.value for r in existing):
            return OperationResult(False, "Attendee is already registered for this session.")

        session = self.sessions.find_session(context.event_id, row["session_id"])
        if session is None:
            return OperationResult(False, f"Session '{row['session_id']}' not found.")

        limit = session.capacity_for(row["expected_booth_id"])
        if limit:
            match = {"session_id": session.id}
            if row["expected_booth_id"] and row["expected_booth_id"] in session.booth_capacities:
                match["expected_booth_id"] = row["expected_booth_id"]
            taken = sum(
                1 for r in self.remote.select("session_registrations", **match)
                if r.get("status") != RegistrationStatus.CANCELLED.value
            )
            if taken >= limit:
                return OperationResult(False, "Session is full.", {"limit": limit, "registered": taken})

        stored = self.remote.insert("session_registrations", row)
        self.sessions.cache.save_registrations([SessionRegistration.from_dict(stored)])
        return OperationResult(True, "Registration created.", stored)

    def cancel(self, registration_id: str) -> OperationResult:
        """Delete a registration; requires a connection"""
        if not self.online:
            return OperationResult(False, "Registrations cannot be cancelled while offline.")
        try:
            removed = self.remote.delete("session_registrations", {"id": registration_id})
        except RemoteUnavailableException as e:
            self._went_offline(e)
            return OperationResult(False, "Registrations cannot be cancelled while offline.")
        except RemoteStoreException as e:
            return OperationResult(False, f"Failed to cancel registration: {e.details}")
        if not removed:
            return OperationResult(False, f"Registration '{registration_id}' not found.")
        self.sessions.cache.remove_registration(registration_id)
        return OperationResult(True, "Registration cancelled.")

    def check_in(self, context: ScannerContext, attendee_id: str) -> OperationResult:
        """
        Record an attendee's arrival at the check-in desk

        Raises:
            AttendeeNotFoundException: If the attendee is not on the event's list
        """
        if not context.event_id or not attendee_id:
            return OperationResult(False, "Event and attendee are required.")

        data = {
            "event_id": context.event_id,
            "attendee_id": attendee_id,
            "checked_in_at": format_timestamp(self.clock()),
        }
        try:
            if self.online:
                try:
                    match = {"event_id": context.event_id, "attendee_id": attendee_id}
                    updated = self.remote.update("event_attendees", match, {"checked_in_at": data["checked_in_at"]})
                    if not updated:
                        raise AttendeeNotFoundException(attendee_id, context.event_id)
                    return OperationResult(True, "Attendee checked in.", data)
                except RemoteUnavailableException as e:
                    self._went_offline(e)
            return self._queue(ActionType.CHECK_IN, data, "Offline: check-in saved locally.")
        except AttendeeNotFoundException:
            raise
        except RemoteStoreException as e:
            logger.error("Check-in of %s failed: %s", attendee_id, e)
            return OperationResult(False, f"Failed to check in: {e.details}")
        except EventScannerException as e:
            return OperationResult(False, str(e))
