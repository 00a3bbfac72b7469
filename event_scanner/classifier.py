"""
Scan classification rules

Decides whether a scan is EXPECTED, a WALK_IN, at the WRONG_BOOTH or
OUT_OF_SCHEDULE, from the attendee's registrations and the sessions that
are running at the scanned booth. Classification is pure: it reads the
data it is given and never raises; missing data degrades to the
conservative outcomes (OUT_OF_SCHEDULE or WRONG_BOOTH).
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .models import (
    BoothRestriction,
    RegistrationStatus,
    ScanStatus,
    ScanType,
    Session,
    SessionRegistration,
    format_timestamp,
)
from .schedule import operational_sessions

logger = logging.getLogger(__name__)


@dataclass
class Classification:
    """Result of classifying one scan"""
    status: ScanStatus
    scan_type: ScanType
    message: str
    session: Optional[Session] = None
    registration: Optional[SessionRegistration] = None
    expected_booth_id: Optional[str] = None
    marks_attended: bool = False
    auto_register: bool = False
    conflicting_session: Optional[Session] = None

    @property
    def is_registered(self) -> bool:
        return self.registration is not None

    def details(self) -> dict:
        """Summary suitable for API responses"""
        return {
            "session_id": self.session.id if self.session else None,
            "session_name": self.session.name if self.session else None,
            "is_registered": self.is_registered,
            "expected_booth_id": self.expected_booth_id,
            "conflicting_session": self.conflicting_session.name if self.conflicting_session else None,
            "reason": self.message,
        }


def _out_of_schedule(message: str) -> Classification:
    return Classification(ScanStatus.OUT_OF_SCHEDULE, ScanType.OUT_OF_SCHEDULE, message)


def _registrations_for(
    attendee_id: str, session_id: str, registrations: Iterable[SessionRegistration]
) -> List[SessionRegistration]:
    return [
        r for r in registrations
        if r.attendee_id == attendee_id and r.session_id == session_id and r.is_active
    ]


def _expected(session: Session, registration: SessionRegistration, message: str) -> Classification:
    return Classification(
        ScanStatus.EXPECTED,
        ScanType.REGULAR,
        message,
        session=session,
        registration=registration,
        expected_booth_id=registration.expected_booth_id,
        marks_attended=registration.status != RegistrationStatus.ATTENDED,
    )


def _unregistered(session: Session, walk_in_message: str) -> Classification:
    config = session.config
    # Pre-assignment wins over a conflicting allows_walk_ins flag
    if config.requires_pre_assignment or not config.allows_walk_ins:
        return Classification(
            ScanStatus.WRONG_BOOTH,
            ScanType.REGULAR,
            "Registration required",
            session=session,
        )
    return Classification(ScanStatus.WALK_IN, ScanType.REGULAR, walk_in_message, session=session)


def classify_booth_scan(
    attendee_id: str,
    booth_id: str,
    registrations: Iterable[SessionRegistration],
    sessions: Iterable[Session],
    now: datetime,
    grace_minutes: int = 0,
) -> Classification:
    """
    Classify a scan made at a booth

    Args:
        attendee_id: Attendee whose badge was scanned
        booth_id: Booth where the scan happened
        registrations: The attendee's session registrations
        sessions: Sessions of the event
        now: Moment of the scan
        grace_minutes: Minutes a session's window is widened on both sides

    Returns:
        Classification; never raises
    """
    try:
        registrations = list(registrations)
        candidates = operational_sessions(sessions, booth_id, now, grace_minutes)
        if not candidates:
            return _out_of_schedule("No active session at this booth")

        session = candidates[0]
        if len(candidates) > 1:
            logger.info(
                "Scan at booth %s matched %d sessions, using '%s' (%s)",
                booth_id, len(candidates), session.name, session.id,
            )

        held = _registrations_for(attendee_id, session.id, registrations)
        for registration in held:
            if registration.expected_booth_id == booth_id:
                return _expected(session, registration, "Expected attendee")

        # Assigned booths only accept attendees assigned to this exact booth
        if session.config.booth_restriction == BoothRestriction.ASSIGNED:
            registration = held[0] if held else None
            if registration is not None and registration.expected_booth_id:
                message = f"Expected at booth {registration.expected_booth_id}"
            else:
                message = "No booth assignment for this session"
            return Classification(
                ScanStatus.WRONG_BOOTH,
                ScanType.REGULAR,
                message,
                session=session,
                registration=registration,
                expected_booth_id=registration.expected_booth_id if registration else None,
            )

        if held:
            registration = held[0]
            # A registration naming another booth is only relaxed for "any"
            if (
                registration.expected_booth_id
                and session.config.booth_restriction != BoothRestriction.ANY
            ):
                return Classification(
                    ScanStatus.WRONG_BOOTH,
                    ScanType.REGULAR,
                    f"Expected at booth {registration.expected_booth_id}",
                    session=session,
                    registration=registration,
                    expected_booth_id=registration.expected_booth_id,
                )
            return _expected(session, registration, "Registered for session")

        return _unregistered(session, "Walk-in (not pre-registered)")
    except Exception:
        logger.exception("Failed to classify scan for attendee %s at booth %s", attendee_id, booth_id)
        return _out_of_schedule("Classification failed")


def classify_session_scan(
    attendee_id: str,
    session: Optional[Session],
    registrations: Iterable[SessionRegistration],
    sessions: Iterable[Session] = (),
) -> Classification:
    """
    Classify a scan made by a scanner bound to a session rather than a booth

    Unregistered walk-ins are flagged for auto-registration. When the
    attendee holds a registration for another session overlapping this
    one, it is reported as the conflicting session.
    """
    try:
        if session is None:
            return _out_of_schedule("Session not found")

        registrations = list(registrations)
        held = _registrations_for(attendee_id, session.id, registrations)
        if held:
            return _expected(session, held[0], "Registered for session")

        result = _unregistered(session, "Walk-in (not pre-registered)")
        if result.status != ScanStatus.WALK_IN:
            return result

        result.auto_register = True
        by_id = {s.id: s for s in sessions}
        for registration in registrations:
            other = by_id.get(registration.session_id)
            if (
                other is not None
                and other.id != session.id
                and registration.attendee_id == attendee_id
                and registration.is_active
                and other.end_time >= session.start_time
                and other.start_time <= session.end_time
            ):
                result.conflicting_session = other
                result.message = f"Should be at: {other.name}"
                break
        return result
    except Exception:
        logger.exception("Failed to classify session scan for attendee %s", attendee_id)
        return _out_of_schedule("Classification failed")


def walk_in_registration(event_id: str, attendee_id: str, session: Session, now: datetime) -> Dict:
    """Registration row created for a walk-in at a session scanner, already attended"""
    return {
        "id": str(uuid.uuid4()),
        "event_id": event_id,
        "session_id": session.id,
        "attendee_id": attendee_id,
        "expected_booth_id": None,
        "status": RegistrationStatus.ATTENDED.value,
        "registration_time": format_timestamp(now),
    }
