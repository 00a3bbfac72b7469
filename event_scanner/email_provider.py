"""
Email delivery contract

The scanner only needs to hand a templated message to a delivery
provider and keep the provider's message id for tracking. Concrete SaaS
wiring lives outside this package; ``LoggingEmailProvider`` is used in
development and tests.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class EmailProvider(ABC):
    """Sends templated emails"""

    @abstractmethod
    def send(self, recipient: str, template_type: str, payload: Dict) -> DeliveryResult:
        """
        Send one email

        Args:
            recipient: Destination address
            template_type: Template name, e.g. 'access_code'
            payload: Values rendered into the template

        Returns:
            DeliveryResult with the provider's message id on success
        """
        pass


@dataclass
class LoggingEmailProvider(EmailProvider):
    """Logs messages instead of sending them and remembers what was sent"""
    sent: List[Dict] = field(default_factory=list)

    def send(self, recipient: str, template_type: str, payload: Dict) -> DeliveryResult:
        if not recipient:
            return DeliveryResult(success=False, error="recipient is required")
        message_id = f"log-{uuid.uuid4().hex}"
        self.sent.append({
            "recipient": recipient,
            "template_type": template_type,
            "payload": dict(payload),
            "provider_message_id": message_id,
        })
        logger.info("Email '%s' to %s logged as %s", template_type, recipient, message_id)
        return DeliveryResult(success=True, provider_message_id=message_id)
