"""
Data Models for Event Scanner

This module contains the data model classes for sessions, registrations,
scans and offline actions. Remote rows and local store records are
converted through ``from_dict``/``to_dict`` so that every value crossing a
storage boundary is validated once, here.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import DataValidationException


class ScanningContext(Enum):
    """What kind of activity a session's scans represent"""
    PRESENTATION = "presentation"
    BOOTH_MEETING = "booth_meeting"
    NETWORKING = "networking"
    BREAK = "break"
    LEAD_CAPTURE = "lead_capture"
    OPEN_ATTENDANCE = "open_attendance"
    CUSTOM = "custom"


class BoothRestriction(Enum):
    """Which booths a registered attendee may be scanned at"""
    NONE = "none"
    ANY = "any"
    ASSIGNED = "assigned"


class RegistrationStatus(Enum):
    """Lifecycle of a session registration"""
    REGISTERED = "Registered"
    ATTENDED = "Attended"
    CANCELLED = "Cancelled"
    NO_SHOW = "No-Show"


class ScanStatus(Enum):
    """Outcome category of a scan"""
    EXPECTED = "EXPECTED"
    WALK_IN = "WALK_IN"
    WRONG_BOOTH = "WRONG_BOOTH"
    OUT_OF_SCHEDULE = "OUT_OF_SCHEDULE"
    # Unclassified scans, e.g. rows written before classification existed
    REGULAR = "regular"


class ScanType(Enum):
    """Whether a scan happened inside a scheduled session"""
    REGULAR = "regular"
    OUT_OF_SCHEDULE = "out_of_schedule"


class ActionType(Enum):
    """Kinds of mutating actions that can be queued while offline"""
    CHECK_IN = "check-in"
    REGISTRATION = "registration"
    SCAN = "scan"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime:
    """
    Parse an ISO-8601 string (or pass through a datetime)

    Naive values are assumed to be UTC.

    Raises:
        DataValidationException: If the value is missing or malformed
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise DataValidationException(field_name, f"invalid timestamp '{value}': {e}")
    else:
        raise DataValidationException(field_name, "timestamp is required")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601, passing None through"""
    return value.isoformat() if value is not None else None


def _require(data: Dict, key: str, model: str) -> Any:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise DataValidationException(f"{model}.{key}", "field is required")
    return value


def _enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise DataValidationException(field_name, f"'{value}' is not one of: {allowed}")


@dataclass
class SessionConfig:
    """
    Scanning rules attached to a session

    Decides whether walk-ins are admitted, whether attendees must be
    pre-assigned, and which booths the session covers.
    """
    scanning_context: ScanningContext = ScanningContext.PRESENTATION
    requires_pre_assignment: bool = False
    allows_walk_ins: bool = True
    has_capacity: bool = False
    max_capacity: Optional[int] = None
    booth_restriction: BoothRestriction = BoothRestriction.NONE
    booth_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'SessionConfig':
        """
        Create SessionConfig from a stored config object

        Missing keys fall back to the open-attendance defaults, so a
        session without any config behaves like an open presentation.

        Raises:
            DataValidationException: If an enum value is unknown
        """
        data = data or {}
        max_capacity = data.get("max_capacity")
        return cls(
            scanning_context=_enum(
                ScanningContext,
                data.get("scanning_context", ScanningContext.PRESENTATION.value),
                "config.scanning_context",
            ),
            requires_pre_assignment=bool(data.get("requires_pre_assignment", False)),
            allows_walk_ins=bool(data.get("allows_walk_ins", True)),
            has_capacity=bool(data.get("has_capacity", False)),
            max_capacity=int(max_capacity) if max_capacity is not None else None,
            booth_restriction=_enum(
                BoothRestriction,
                data.get("booth_restriction", BoothRestriction.NONE.value),
                "config.booth_restriction",
            ),
            booth_ids=[str(b) for b in data.get("booth_ids") or []],
        )

    @classmethod
    def from_preset(cls, name: str) -> 'SessionConfig':
        """
        Build a config from one of SESSION_CONFIG_PRESETS

        Raises:
            DataValidationException: If the preset name is unknown
        """
        if name not in SESSION_CONFIG_PRESETS:
            raise DataValidationException("preset", f"unknown preset '{name}'")
        return cls.from_dict(SESSION_CONFIG_PRESETS[name])

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["scanning_context"] = self.scanning_context.value
        data["booth_restriction"] = self.booth_restriction.value
        return data

    def validate(self) -> List[str]:
        """
        Check the config for inconsistent settings

        Returns:
            List of human-readable problems; empty when the config is valid
        """
        errors = []
        if self.has_capacity and (not self.max_capacity or self.max_capacity <= 0):
            errors.append("Max capacity must be greater than 0 when capacity is enabled")
        if self.booth_restriction != BoothRestriction.NONE and not self.booth_ids:
            errors.append("Booth IDs must be specified when booth restriction is enabled")
        if self.requires_pre_assignment and self.allows_walk_ins:
            errors.append("Walk-ins cannot be allowed when pre-assignment is required")
        return errors

    def applies_to_booth(self, booth_id: str) -> bool:
        """True if the config covers the booth (no booth list covers all)"""
        return not self.booth_ids or booth_id in self.booth_ids


SESSION_CONFIG_PRESETS: Dict[str, Dict] = {
    "booth_meeting": {
        "scanning_context": "booth_meeting",
        "requires_pre_assignment": True,
        "allows_walk_ins": False,
        "booth_restriction": "assigned",
    },
    "keynote_presentation": {
        "scanning_context": "presentation",
        "requires_pre_assignment": False,
        "allows_walk_ins": True,
        "booth_restriction": "none",
        "has_capacity": True,
    },
    "lead_capture_station": {
        "scanning_context": "lead_capture",
        "requires_pre_assignment": False,
        "allows_walk_ins": True,
        "booth_restriction": "any",
    },
    "networking_event": {
        "scanning_context": "networking",
        "requires_pre_assignment": False,
        "allows_walk_ins": True,
        "booth_restriction": "none",
    },
    "open_attendance": {
        "scanning_context": "open_attendance",
        "requires_pre_assignment": False,
        "allows_walk_ins": True,
        "booth_restriction": "none",
    },
}


@dataclass
class Session:
    """
    Data model for a scheduled session

    A time-boxed agenda item (presentation, meeting slot, networking
    block) with the scanning rules that apply while it runs.
    """
    id: str
    event_id: str
    name: str
    start_time: datetime
    end_time: datetime
    config: SessionConfig = field(default_factory=SessionConfig)
    booth_capacities: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Session':
        """
        Create Session from a ``sessions`` row

        Raises:
            DataValidationException: If required fields are missing
        """
        capacities = data.get("booth_capacities") or {}
        if isinstance(capacities, list):
            capacities = {str(c["booth_id"]): int(c.get("capacity", 0)) for c in capacities}
        start_time = parse_timestamp(_require(data, "start_time", "session"), "session.start_time")
        end_time = parse_timestamp(_require(data, "end_time", "session"), "session.end_time")
        if end_time < start_time:
            raise DataValidationException("session.end_time", "session ends before it starts")
        return cls(
            id=str(_require(data, "id", "session")),
            event_id=str(_require(data, "event_id", "session")),
            name=data.get("name") or "",
            start_time=start_time,
            end_time=end_time,
            config=SessionConfig.from_dict(data.get("config")),
            booth_capacities={str(k): int(v) for k, v in capacities.items()},
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
            "config": self.config.to_dict(),
            "booth_capacities": dict(self.booth_capacities),
        }

    def applies_to_booth(self, booth_id: str) -> bool:
        """
        Check whether scans at the booth belong to this session

        An explicit booth list on the config wins; otherwise the booths
        with a configured capacity; otherwise every booth.
        """
        if self.config.booth_ids:
            return booth_id in self.config.booth_ids
        if self.booth_capacities:
            return booth_id in self.booth_capacities
        return True

    def capacity_for(self, booth_id: Optional[str] = None) -> Optional[int]:
        """Capacity limit for the booth, or the session-wide limit"""
        if booth_id and booth_id in self.booth_capacities:
            return self.booth_capacities[booth_id]
        if self.config.has_capacity:
            return self.config.max_capacity
        return None


@dataclass
class SessionRegistration:
    """Links an attendee to a session and, optionally, an expected booth"""
    id: str
    attendee_id: str
    session_id: str
    event_id: str
    expected_booth_id: Optional[str]
    status: RegistrationStatus
    registration_time: datetime

    @classmethod
    def from_dict(cls, data: Dict) -> 'SessionRegistration':
        expected = data.get("expected_booth_id")
        return cls(
            id=str(_require(data, "id", "registration")),
            attendee_id=str(_require(data, "attendee_id", "registration")),
            session_id=str(_require(data, "session_id", "registration")),
            event_id=str(_require(data, "event_id", "registration")),
            expected_booth_id=str(expected) if expected else None,
            status=_enum(
                RegistrationStatus,
                data.get("status", RegistrationStatus.REGISTERED.value),
                "registration.status",
            ),
            registration_time=parse_timestamp(
                data.get("registration_time") or utcnow(), "registration.registration_time"
            ),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "attendee_id": self.attendee_id,
            "session_id": self.session_id,
            "event_id": self.event_id,
            "expected_booth_id": self.expected_booth_id,
            "status": self.status.value,
            "registration_time": format_timestamp(self.registration_time),
        }

    @property
    def is_active(self) -> bool:
        """Cancelled registrations no longer count for classification"""
        return self.status != RegistrationStatus.CANCELLED


@dataclass
class ScanRecord:
    """
    Data model for a single scan

    Immutable once written; the authoritative log of attendee
    touchpoints at booths and sessions.
    """
    id: Optional[str]
    event_id: str
    attendee_id: str
    booth_id: Optional[str]
    session_id: Optional[str]
    timestamp: datetime
    scan_status: ScanStatus
    scan_type: ScanType = ScanType.REGULAR
    expected_booth_id: Optional[str] = None
    device_id: Optional[str] = None
    operator_id: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScanRecord':
        return cls(
            id=str(data["id"]) if data.get("id") else None,
            event_id=str(_require(data, "event_id", "scan")),
            attendee_id=str(_require(data, "attendee_id", "scan")),
            booth_id=data.get("booth_id") or None,
            session_id=data.get("session_id") or None,
            timestamp=parse_timestamp(data.get("timestamp"), "scan.timestamp"),
            scan_status=_enum(
                ScanStatus, data.get("scan_status") or ScanStatus.REGULAR.value, "scan.scan_status"
            ),
            scan_type=_enum(ScanType, data.get("scan_type") or ScanType.REGULAR.value, "scan.scan_type"),
            expected_booth_id=data.get("expected_booth_id") or None,
            device_id=data.get("device_id") or None,
            operator_id=data.get("operator_id") or None,
            notes=data.get("notes") or None,
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["timestamp"] = format_timestamp(self.timestamp)
        data["scan_status"] = self.scan_status.value
        data["scan_type"] = self.scan_type.value
        if data["id"] is None:
            del data["id"]
        return data


@dataclass
class PendingAction:
    """
    A mutating action recorded while the remote store was unreachable

    ``data`` is the payload in the shape of the target remote table.
    ``sequence`` preserves enqueue order for actions sharing a timestamp.
    """
    id: str
    type: ActionType
    data: Dict
    timestamp: datetime
    sequence: int = 0
    synced: bool = False
    attempts: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'PendingAction':
        next_attempt = data.get("next_attempt_at")
        return cls(
            id=str(_require(data, "id", "action")),
            type=_enum(ActionType, data.get("type"), "action.type"),
            data=dict(data.get("data") or {}),
            timestamp=parse_timestamp(data.get("timestamp"), "action.timestamp"),
            sequence=int(data.get("sequence", 0)),
            synced=bool(data.get("synced", False)),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            next_attempt_at=parse_timestamp(next_attempt, "action.next_attempt_at") if next_attempt else None,
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "timestamp": format_timestamp(self.timestamp),
            "sequence": self.sequence,
            "synced": self.synced,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "next_attempt_at": format_timestamp(self.next_attempt_at),
        }

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now


@dataclass
class AccessCode:
    """One-time numeric code granting an attendee portal login"""
    code: str
    attendee_id: str
    event_id: str
    email: str
    expires_at: datetime
    used_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'AccessCode':
        used_at = data.get("used_at")
        return cls(
            code=str(_require(data, "code", "access_code")),
            attendee_id=str(_require(data, "attendee_id", "access_code")),
            event_id=str(_require(data, "event_id", "access_code")),
            email=data.get("email") or "",
            expires_at=parse_timestamp(data.get("expires_at"), "access_code.expires_at"),
            used_at=parse_timestamp(used_at, "access_code.used_at") if used_at else None,
        )

    def to_dict(self) -> Dict:
        return {
            "code": self.code,
            "attendee_id": self.attendee_id,
            "event_id": self.event_id,
            "email": self.email,
            "expires_at": format_timestamp(self.expires_at),
            "used_at": format_timestamp(self.used_at),
        }

    def is_valid(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


@dataclass
class Operator:
    """Check-in staff member allowed to run a scanner"""
    operator_id: str
    password: str

    def verify_password(self, password: str) -> bool:
        return self.password == password

    def to_dict(self) -> Dict:
        """Dictionary with the operator ID only"""
        return {"operator_id": self.operator_id}


@dataclass
class ScannerContext:
    """
    Who is scanning, for which event, on which device

    Built per request and passed explicitly into services.
    """
    operator_id: str
    event_id: str
    device_id: Optional[str] = None


@dataclass
class OperationResult:
    """Typed outcome returned by every fallible service operation"""
    success: bool
    message: str
    data: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {"success": self.success, "message": self.message, "data": self.data}


@dataclass
class ScanResult(OperationResult):
    """Outcome of a scan attempt, with its classification"""
    status: ScanStatus = ScanStatus.OUT_OF_SCHEDULE
    scan: Optional[ScanRecord] = None
    details: Dict = field(default_factory=dict)
    was_offline: bool = False

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data.update({
            "status": self.status.value,
            "scan": self.scan.to_dict() if self.scan else None,
            "details": self.details,
            "was_offline": self.was_offline,
        })
        return data


@dataclass
class SyncReport:
    """Summary of one sync run"""
    started: bool
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    exhausted: int = 0
    purged: int = 0
    remaining: int = 0
    message: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)
