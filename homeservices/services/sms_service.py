"""
Twilio SMS Service
Sends partner and customer messages through the SMS relay and logs each attempt
"""

import logging
from typing import Optional, Protocol

import httpx
from sqlalchemy.orm import Session

from .. import config
from ..models import SmsLog

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class SmsDeliveryError(Exception):
    """The relay did not accept the message"""


class SmsSender(Protocol):
    async def send(self, to_phone: str, body: str) -> Optional[str]:
        """Send one message; returns the relay's message id or raises SmsDeliveryError"""
        ...


class TwilioSender:
    """Twilio Messages REST API over httpx"""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = config.TWILIO_TIMEOUT_SECONDS,
    ):
        self.account_sid = account_sid or config.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or config.TWILIO_AUTH_TOKEN
        self.from_number = from_number or config.TWILIO_FROM_NUMBER
        self.timeout = timeout

    async def send(self, to_phone: str, body: str) -> Optional[str]:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise SmsDeliveryError("Twilio is not configured")

        logger.info(f"🚀 Sending SMS to Twilio API for {to_phone}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json",
                    auth=(self.account_sid, self.auth_token),
                    data={"To": to_phone, "From": self.from_number, "Body": body},
                )
        except httpx.HTTPError as e:
            raise SmsDeliveryError(f"Twilio request failed: {e}") from e

        logger.info(f"📡 Twilio API response status: {response.status_code}")
        if response.status_code in (200, 201):
            return response.json().get("sid")

        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        error_message = error_data.get("message", f"HTTP {response.status_code}")
        error_code = error_data.get("code")
        raise SmsDeliveryError(f"[{error_code}] {error_message}" if error_code else error_message)


class LoggingSender:
    """Used when no relay is configured (local development): logs instead of sending"""

    async def send(self, to_phone: str, body: str) -> Optional[str]:
        logger.info(f"📱 [dry-run] SMS to {to_phone}: {body}")
        return None


def build_sender() -> SmsSender:
    if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN and config.TWILIO_FROM_NUMBER:
        return TwilioSender()
    logger.warning("⚠️ Twilio not configured - SMS will only be logged")
    return LoggingSender()


async def send_sms(
    db: Session,
    sender: SmsSender,
    to_phone: str,
    message_body: str,
    message_type: str,
    order_id: Optional[int] = None,
) -> tuple[bool, Optional[str]]:
    """
    Send SMS and record it in sms_logs (added to the caller's transaction)

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    if not to_phone:
        logger.debug(f"No phone number provided for {message_type} (order {order_id})")
        return False, "No phone number provided"

    if not to_phone.startswith("+"):
        logger.warning(f"Phone number not in E.164 format: {to_phone}")
        return False, "Phone number must be in E.164 format (e.g., +1234567890)"

    logger.info(f"📱 Preparing SMS: type={message_type}, to={to_phone}, order={order_id}")
    try:
        message_sid = await sender.send(to_phone, message_body)
    except SmsDeliveryError as e:
        db.add(
            SmsLog(
                to_phone=to_phone,
                message_body=message_body,
                message_type=message_type,
                order_id=order_id,
                status="failed",
                error_message=str(e),
            )
        )
        logger.error(f"❌ SMS {message_type} to {to_phone} failed: {e}")
        return False, str(e)

    db.add(
        SmsLog(
            to_phone=to_phone,
            message_body=message_body,
            message_type=message_type,
            order_id=order_id,
            provider_message_sid=message_sid,
            status="sent",
        )
    )
    logger.info(f"✅ SMS sent successfully: {message_type} to {to_phone} (SID: {message_sid})")
    return True, None
