"""
Attendee access codes

Six-digit one-time codes that let an attendee log into the attendee
portal. A code is valid until the day after its event ends and is spent
the first time it is validated.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .email_provider import EmailProvider
from .exceptions import AccessCodeException, DataValidationException, RemoteStoreException
from .models import AccessCode, OperationResult, format_timestamp, parse_timestamp, utcnow
from .remote import RemoteStore

logger = logging.getLogger(__name__)

CODES_TABLE = "attendee_access_codes"
EMAIL_LOGS_TABLE = "email_logs"
TEMPLATE_TYPE = "access_code"

DEFAULT_EXPIRATION_DAYS = 30


class AccessCodeService:
    """
    Issues, validates and spends attendee access codes

    Attributes:
        remote: Remote store holding codes, events and email logs
        email_provider: Delivers the code to the attendee
        max_attempts: Random draws allowed when looking for an unused code
    """

    def __init__(
        self,
        remote: RemoteStore,
        email_provider: EmailProvider,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 10,
    ):
        self.remote = remote
        self.email_provider = email_provider
        self.clock = clock
        self.max_attempts = max_attempts

    def _codes(self, **match) -> List[AccessCode]:
        codes = []
        for row in self.remote.select(CODES_TABLE, **match):
            try:
                codes.append(AccessCode.from_dict(row))
            except DataValidationException as e:
                logger.warning("Skipping invalid access code row: %s", e)
        return codes

    def generate_unique_code(self) -> str:
        """
        Draw random six-digit codes until one is not in use

        Raises:
            AccessCodeException: If every attempt collided
        """
        for _ in range(self.max_attempts):
            code = str(100000 + secrets.randbelow(900000))
            if not self.remote.select(CODES_TABLE, code=code):
                return code
        raise AccessCodeException(f"could not generate unique code after {self.max_attempts} attempts")

    def invalidate_old_codes(self, attendee_id: str, event_id: str) -> int:
        """Spend every unused code of the attendee for the event"""
        updated = self.remote.update(
            CODES_TABLE,
            {"attendee_id": attendee_id, "event_id": event_id, "used_at": None},
            {"used_at": format_timestamp(self.clock())},
        )
        return len(updated)

    def expiration_for(self, event_id: str) -> datetime:
        """One day after the event ends, or 30 days from now without an end date"""
        for event in self.remote.select("events", id=event_id):
            end_date = event.get("end_date")
            if end_date:
                try:
                    return parse_timestamp(end_date, "event.end_date") + timedelta(days=1)
                except DataValidationException as e:
                    logger.warning("Event %s has an unreadable end date: %s", event_id, e)
        return self.clock() + timedelta(days=DEFAULT_EXPIRATION_DAYS)

    def current_code(self, attendee_id: str, event_id: str) -> Optional[AccessCode]:
        """Most recently issued code of the attendee for the event"""
        codes = self._codes(attendee_id=attendee_id, event_id=event_id)
        if not codes:
            return None
        return max(codes, key=lambda c: c.expires_at)

    def _send(self, access_code: AccessCode) -> None:
        payload = {
            "code": access_code.code,
            "event_id": access_code.event_id,
            "attendee_id": access_code.attendee_id,
            "expires_at": format_timestamp(access_code.expires_at),
        }
        delivery = self.email_provider.send(access_code.email, TEMPLATE_TYPE, payload)

        log_row = {
            "event_id": access_code.event_id,
            "attendee_id": access_code.attendee_id,
            "recipient": access_code.email,
            "template_type": TEMPLATE_TYPE,
            "provider_message_id": delivery.provider_message_id,
            "status": "sent" if delivery.success else "failed",
            "error": delivery.error,
            "sent_at": format_timestamp(self.clock()),
        }
        try:
            self.remote.insert(EMAIL_LOGS_TABLE, log_row)
        except RemoteStoreException as e:
            logger.warning("Could not log access code email to %s: %s", access_code.email, e)

        if not delivery.success:
            raise AccessCodeException(delivery.error or "failed to send email", access_code.code)

    def create_and_send(self, email: str, attendee_id: str, event_id: str) -> OperationResult:
        """
        Email an access code, reusing the current one while it is valid

        Args:
            email: Recipient address
            attendee_id: Attendee the code logs in as
            event_id: Event the code is scoped to

        Returns:
            OperationResult with the code in ``data['code']``
        """
        if not email or not attendee_id or not event_id:
            return OperationResult(False, "Email, attendee and event are required.")

        try:
            existing = self.current_code(attendee_id, event_id)
            if existing is not None and existing.is_valid(self.clock()):
                existing.email = email
                self._send(existing)
                return OperationResult(True, "Access code sent! Check your email.", {"code": existing.code})

            self.invalidate_old_codes(attendee_id, event_id)
            access_code = AccessCode(
                code=self.generate_unique_code(),
                attendee_id=attendee_id,
                event_id=event_id,
                email=email,
                expires_at=self.expiration_for(event_id),
            )
            row = access_code.to_dict()
            row["created_at"] = format_timestamp(self.clock())
            self.remote.insert(CODES_TABLE, row)
            self._send(access_code)
        except RemoteStoreException as e:
            logger.error("Failed to issue access code for attendee %s: %s", attendee_id, e)
            return OperationResult(False, "Failed to save access code.")
        except AccessCodeException as e:
            logger.error("Failed to issue access code for attendee %s: %s", attendee_id, e)
            return OperationResult(False, e.reason)

        logger.info("Access code issued for attendee %s in event %s", attendee_id, event_id)
        return OperationResult(True, "Access code sent! Check your email.", {"code": access_code.code})

    def validate_code(self, code: str) -> OperationResult:
        """
        Check a code and spend it

        Returns:
            OperationResult with attendee_id, event_id and email on success
        """
        if not code:
            return OperationResult(False, "Invalid code")
        try:
            matches = self._codes(code=code)
        except RemoteStoreException as e:
            logger.error("Failed to look up access code: %s", e)
            return OperationResult(False, "Database error")

        if not matches:
            return OperationResult(False, "Invalid code")
        access_code = matches[0]
        if access_code.used_at is not None:
            return OperationResult(False, "Code already used")
        if access_code.expires_at < self.clock():
            return OperationResult(False, "Code expired")

        if not self.mark_used(code):
            logger.warning("Access code for attendee %s validated but not marked used", access_code.attendee_id)

        data: Dict = {
            "attendee_id": access_code.attendee_id,
            "event_id": access_code.event_id,
            "email": access_code.email,
        }
        return OperationResult(True, "Code valid", data)

    def mark_used(self, code: str) -> bool:
        try:
            updated = self.remote.update(CODES_TABLE, {"code": code}, {"used_at": format_timestamp(self.clock())})
        except RemoteStoreException as e:
            logger.error("Failed to mark access code used: %s", e)
            return False
        return bool(updated)
