"""
Fallback intent classifiers for partner messages the pattern matcher missed
"""

import json
import logging
import re
from typing import Optional, Protocol

import httpx

from ... import config
from .intents import Confidence, Intent, ParsedIntent

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You classify SMS replies from laundry partners in a pickup and delivery workflow.

Conversation state: {state}

Intents:
- confirm: the partner agrees or says yes
- picked_up: the partner has collected the laundry
- weight: the partner reports a weight in pounds (put the number in "value")
- delivered: the laundry was delivered back to the customer
- reschedule: the partner cannot make the agreed time
- suggest_time: the partner proposes a delivery time (put the time text in "value")
- cancel: the partner wants to cancel the order
- help: the partner asks what to do
- unknown: anything else

If unsure, use intent=unknown with low confidence.
Respond ONLY as JSON: {{"intent": "...", "confidence": "low|medium|high", "value": null}}"""

JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class IntentClassifier(Protocol):
    async def classify(self, message: str, state: str) -> Optional[ParsedIntent]: ...


class NullClassifier:
    """Deterministic-only mode: every unmatched message is unknown"""

    async def classify(self, message: str, state: str) -> Optional[ParsedIntent]:
        return ParsedIntent(Intent.UNKNOWN, Confidence.LOW, source="classifier")


def parse_classifier_output(text: str) -> Optional[ParsedIntent]:
    """Read the model's JSON answer; anything malformed yields None"""
    match = JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
        intent = Intent(str(data.get("intent", "unknown")).lower())
        confidence = Confidence(str(data.get("confidence", "low")).lower())
    except (ValueError, TypeError, AttributeError):
        return None
    value = data.get("value")
    return ParsedIntent(
        intent, confidence, str(value) if value is not None else None, source="classifier"
    )


class LLMIntentClassifier:
    """Claude messages API over httpx"""

    def __init__(
        self,
        api_key: str,
        model: str = config.LLM_MODEL,
        api_url: str = config.LLM_API_URL,
        timeout: float = config.LLM_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.timeout = timeout

    async def classify(self, message: str, state: str) -> Optional[ParsedIntent]:
        payload = {
            "model": self.model,
            "max_tokens": 100,
            "temperature": 0,
            "system": SYSTEM_PROMPT.format(state=state),
            "messages": [{"role": "user", "content": message}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.api_url, json=payload, headers=headers)

        if response.status_code != 200:
            logger.warning(f"⚠️ Classifier API returned {response.status_code}")
            return None

        blocks = response.json().get("content") or []
        text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        parsed = parse_classifier_output(text)
        if parsed is None:
            logger.warning(f"⚠️ Unparseable classifier output: {text[:200]}")
        return parsed


def build_classifier() -> IntentClassifier:
    if config.LLM_API_KEY:
        logger.info(f"🤖 Using LLM intent classifier ({config.LLM_MODEL})")
        return LLMIntentClassifier(config.LLM_API_KEY)
    logger.info("Intent classifier disabled (no API key) - pattern matching only")
    return NullClassifier()
