"""
Partner SMS intent detection

Two tiers:
1. A deterministic matcher for the replies partners actually send
   ("ok", "picked up", "12.5", "reschedule"). A match never calls the model.
2. A fallback classifier for everything else. Any failure there (timeout,
   garbage output, low confidence) degrades to UNKNOWN, which the executor
   answers with the help prompt.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .states import (
    AWAITING_DELIVERY_CONFIRM,
    AWAITING_DELIVERY_SUGGESTION,
    AWAITING_PICKUP_CONFIRM,
    AWAITING_QUOTE_APPROVAL,
    AWAITING_WEIGHT,
    DELIVERY_STATES,
    PICKUP_STATES,
)

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    CONFIRM = "confirm"
    PICKED_UP = "picked_up"
    WEIGHT = "weight"
    DELIVERED = "delivered"
    RESCHEDULE = "reschedule"
    SUGGEST_TIME = "suggest_time"
    CANCEL = "cancel"
    HELP = "help"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ParsedIntent:
    intent: Intent
    confidence: Confidence
    value: Optional[str] = None  # weight as a decimal string, or the suggested time text
    source: str = "pattern"  # pattern, classifier, fallback


UNKNOWN_INTENT = ParsedIntent(Intent.UNKNOWN, Confidence.LOW, source="fallback")

WS = re.compile(r"\s+")
TRAILING_PUNCT = re.compile(r"[.!,\s]+$")

CONFIRM_WORDS = {"confirm", "confirmed", "yes", "y", "ok", "okay", "k", "yep", "yeah", "sure"}
HELP_WORDS = {"help", "?", "info", "commands", "menu"}
CANCEL_WORDS = {"cancel", "stop order", "cancel order"}
PICKED_UP_PHRASES = ("picked up", "got it", "have it", "collected", "picked")
DELIVERED_PHRASES = ("delivered", "dropped off", "drop off done", "returned")
RESCHEDULE_WORDS = ("reschedule", "later", "cant", "can't", "cannot", "not today", "delay")

# States where a bare confirmation word means "yes"
CONFIRM_STATES = {AWAITING_PICKUP_CONFIRM, AWAITING_QUOTE_APPROVAL, AWAITING_DELIVERY_CONFIRM}
# States where a number is a measured weight
WEIGHT_STATES = {AWAITING_WEIGHT, AWAITING_QUOTE_APPROVAL}

EXACT_NUMBER = re.compile(r"^(\d+(?:\.\d+)?)\s*(?:lbs?|pounds?)?$")
EMBEDDED_NUMBER = re.compile(r"(\d+(?:\.\d+)?)\s*(?:lbs?|pounds?)?")
TIME_HINT = re.compile(
    r"\b(\d{1,2}(:\d{2})?\s*(am|pm)|\d{1,2}:\d{2}|noon|tonight|tomorrow|today|morning|"
    r"afternoon|evening|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
)


def normalize(message: str) -> str:
    text = WS.sub(" ", (message or "").strip().lower())
    return TRAILING_PUNCT.sub("", text) if text not in HELP_WORDS else text


def _contains(text: str, phrases) -> bool:
    return any(re.search(rf"(?<!\w){re.escape(p)}(?!\w)", text) for p in phrases)


def match_pattern(message: str, state: str) -> Optional[ParsedIntent]:
    """Deterministic tier; None means no pattern applies"""
    text = normalize(message)
    if not text:
        return None

    if text in HELP_WORDS:
        return ParsedIntent(Intent.HELP, Confidence.HIGH)

    if text in CONFIRM_WORDS and state in CONFIRM_STATES:
        return ParsedIntent(Intent.CONFIRM, Confidence.HIGH)

    if text in CANCEL_WORDS:
        return ParsedIntent(Intent.CANCEL, Confidence.HIGH)

    if state in WEIGHT_STATES:
        exact = EXACT_NUMBER.match(text)
        if exact:
            return ParsedIntent(Intent.WEIGHT, Confidence.HIGH, value=exact.group(1))
        embedded = EMBEDDED_NUMBER.search(text)
        if embedded and not TIME_HINT.search(text):
            return ParsedIntent(Intent.WEIGHT, Confidence.MEDIUM, value=embedded.group(1))

    if state in PICKUP_STATES and _contains(text, PICKED_UP_PHRASES):
        exact = text in PICKED_UP_PHRASES
        return ParsedIntent(Intent.PICKED_UP, Confidence.HIGH if exact else Confidence.MEDIUM)

    if state == AWAITING_DELIVERY_CONFIRM and _contains(text, DELIVERED_PHRASES):
        exact = text in DELIVERED_PHRASES
        return ParsedIntent(Intent.DELIVERED, Confidence.HIGH if exact else Confidence.MEDIUM)

    if _contains(text, RESCHEDULE_WORDS):
        exact = text in RESCHEDULE_WORDS
        return ParsedIntent(Intent.RESCHEDULE, Confidence.HIGH if exact else Confidence.MEDIUM)

    if state in DELIVERY_STATES and TIME_HINT.search(text):
        return ParsedIntent(Intent.SUGGEST_TIME, Confidence.MEDIUM, value=message.strip())

    if state == AWAITING_DELIVERY_SUGGESTION and len(text) >= 3:
        # Any free text here is taken as the partner's proposed time
        return ParsedIntent(Intent.SUGGEST_TIME, Confidence.MEDIUM, value=message.strip())

    return None


async def parse_intent(
    message: str,
    state: str,
    classifier=None,
    timeout: float = 5.0,
) -> ParsedIntent:
    """
    Classify a partner message for the current conversation state.

    Never raises: classifier problems of any kind produce UNKNOWN.
    """
    matched = match_pattern(message, state)
    if matched:
        logger.debug(f"Pattern match: {matched.intent.value} ({matched.confidence.value})")
        return matched

    if classifier is None:
        return UNKNOWN_INTENT

    try:
        result = await asyncio.wait_for(classifier.classify(message, state), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"⚠️ Intent classifier timed out after {timeout}s")
        return UNKNOWN_INTENT
    except Exception as e:
        logger.warning(f"⚠️ Intent classifier failed, treating message as unknown: {e}")
        return UNKNOWN_INTENT

    if result is None or result.confidence == Confidence.LOW:
        return UNKNOWN_INTENT
    return ParsedIntent(result.intent, result.confidence, result.value, source="classifier")
