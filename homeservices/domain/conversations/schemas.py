"""Conversation schemas - inbound relay payloads"""

from typing import Optional
from xml.sax.saxutils import escape

from pydantic import BaseModel

from ...shared.validators import normalize_inbound_phone


class InboundSms(BaseModel):
    """The fields we use from Twilio's form-encoded webhook"""

    phone: str = ""
    body: str = ""
    message_sid: Optional[str] = None

    @classmethod
    def from_form(cls, form: dict) -> "InboundSms":
        return cls(
            phone=normalize_inbound_phone(form.get("From", "")),
            body=(form.get("Body") or "").strip(),
            message_sid=form.get("MessageSid") or None,
        )


def twiml_message(reply: Optional[str]) -> str:
    """TwiML response; an empty <Response/> sends nothing back"""
    if not reply:
        return '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Message>{escape(reply)}</Message></Response>"
    )
