"""
External capabilities the fulfillment core calls into.

- PincodeValidator: address/pincode serviceability lookup
- NotificationSender: outbound call / WhatsApp / email delivery

Content rendering and provider integrations live outside this service; the
defaults here validate format only and log instead of sending.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

PINCODE_RE = re.compile(r"^[1-9]\d{5}$")


@dataclass
class PincodeValidation:
    valid: bool
    serviceability: Dict[str, bool] = field(default_factory=dict)


@dataclass
class NotificationResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class PincodeValidator(Protocol):
    async def validate_pincode(self, pincode: str) -> PincodeValidation:
        ...


class NotificationSender(Protocol):
    async def send_call(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        ...

    async def send_whatsapp(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        ...

    async def send_email(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        ...


class FormatPincodeValidator:
    """Accepts any well-formed Indian pincode; reports no per-carrier data."""

    async def validate_pincode(self, pincode: str) -> PincodeValidation:
        return PincodeValidation(valid=bool(PINCODE_RE.match((pincode or "").strip())))


class LoggingNotificationSender:
    """Logs the notification and returns a generated message id."""

    async def _send(self, channel: str, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        if not recipient:
            logger.warning(f"[NOTIFY] {channel} '{template}' skipped: no recipient")
            return NotificationResult(success=False, error="missing_recipient")

        message_id = f"{channel}-{uuid.uuid4().hex[:16]}"
        logger.info(f"[NOTIFY] {channel} '{template}' queued as {message_id} (keys={sorted(data)})")
        return NotificationResult(success=True, provider_message_id=message_id)

    async def send_call(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        return await self._send("call", recipient, template, data)

    async def send_whatsapp(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        return await self._send("whatsapp", recipient, template, data)

    async def send_email(self, recipient: str, template: str, data: Dict[str, Any]) -> NotificationResult:
        return await self._send("email", recipient, template, data)
