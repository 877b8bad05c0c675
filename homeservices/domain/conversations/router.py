"""Partner SMS webhook - inbound messages from the relay, answered with TwiML"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from ... import config
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ...webhook_security import verify_twilio_request
from .classifier import IntentClassifier, build_classifier
from .schemas import InboundSms, twiml_message
from .service import ConversationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Partner SMS"])

sms_rate_limit = create_rate_limiter(limit=60, window_seconds=60, key_prefix="partner_sms")

_classifier = None


def get_intent_classifier() -> IntentClassifier:
    """Shared classifier instance, built on first use"""
    global _classifier
    if _classifier is None:
        _classifier = build_classifier()
    return _classifier


def get_conversation_service(
    db: Session = Depends(get_db),
    classifier: IntentClassifier = Depends(get_intent_classifier),
) -> ConversationService:
    """Dependency injection for ConversationService"""
    return ConversationService(db, classifier=classifier)


@router.post("/partner-sms")
async def partner_sms_webhook(
    request: Request,
    service: ConversationService = Depends(get_conversation_service),
    _: None = Depends(sms_rate_limit),
):
    """
    Handle an inbound partner SMS

    Twilio sends From, Body and MessageSid as form fields. The reply goes
    back inline as TwiML; relay retries of the same MessageSid get the
    original reply without being processed again.
    """
    form = dict(await request.form())
    verify_twilio_request(request, form, config.TWILIO_AUTH_TOKEN)

    sms = InboundSms.from_form(form)
    if not sms.phone:
        raise HTTPException(status_code=400, detail="Missing sender")

    logger.info(f"📱 Partner SMS from {sms.phone} ({sms.message_sid})")
    reply = await service.handle_inbound(sms.phone, sms.body, sms.message_sid)
    return Response(content=twiml_message(reply), media_type="application/xml")
