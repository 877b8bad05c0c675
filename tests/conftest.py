import os
import tempfile

# Configuration is read at import time; pin it before anything imports homeservices
_IMPORT_DB_DIR = tempfile.mkdtemp(prefix="homeservices-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_IMPORT_DB_DIR}/import.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CACHE_ENABLED"] = "false"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
for _key in (
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "TWILIO_WEBHOOK_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "ANTHROPIC_API_KEY",
    "REDIS_URL",
):
    os.environ.pop(_key, None)

from datetime import datetime, timedelta  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from homeservices import models  # noqa: E402
from homeservices.database import Base, build_engine, get_db  # noqa: E402
from homeservices.domain.conversations.intents import Confidence, Intent, ParsedIntent  # noqa: E402
from homeservices.domain.conversations.router import get_intent_classifier  # noqa: E402
from homeservices.domain.orders.schemas import OrderCreate  # noqa: E402
from homeservices.domain.payments.gateway import IntentResult  # noqa: E402
from homeservices.domain.payments.router import get_payment_gateway  # noqa: E402
from homeservices.errors import PaymentFailure  # noqa: E402
from homeservices.services.sms_service import SmsDeliveryError  # noqa: E402
from homeservices.shared.clock import utcnow  # noqa: E402

LAUNDRY_PARTNER_PHONE = "+15550001111"
CLEANING_PARTNER_PHONE = "+15550002222"
CUSTOMER_PHONE = "+12125550100"


# ============================================================================
# DATABASE
# ============================================================================


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


PRICING_RULES = [
    ("LND_WF_PERLB", "LAUNDRY", "PER_UNIT", 175, None, "Wash & fold (per lb)"),
    ("LND_WF_MIN", "LAUNDRY", "MINIMUM", 2625, None, "Wash & fold minimum"),
    ("LND_HANG_DRY", "LAUNDRY", "ADDON", 500, None, "Hang dry"),
    ("CLN_STD_STUDIO", "CLEANING", "FLAT", 9900, None, "Studio"),
    ("CLN_STD_1BR", "CLEANING", "FLAT", 11900, None, "1 bedroom"),
    ("CLN_STD_2BR", "CLEANING", "FLAT", 14900, None, "2 bedrooms"),
    ("CLN_STD_3BR", "CLEANING", "FLAT", 17900, None, "3 bedrooms"),
    ("CLN_STD_4BR", "CLEANING", "FLAT", 20900, None, "4 bedrooms"),
    ("CLN_DEEP_MULTI", "CLEANING", "MULTIPLIER", None, "1.5", "Deep clean"),
    ("CLN_MOVEOUT_MULTI", "CLEANING", "MULTIPLIER", None, "1.75", "Move-out clean"),
    ("CLN_MIN", "CLEANING", "MINIMUM", 9900, None, "Cleaning minimum"),
    ("CLN_FRIDGE", "CLEANING", "ADDON", 3500, None, "Inside fridge"),
    ("CLN_OVEN", "CLEANING", "ADDON", 3500, None, "Inside oven"),
]


def seed_pricing(db):
    for unit_key, service_type, unit_type, price, multiplier, label in PRICING_RULES:
        db.add(
            models.PricingRule(
                unit_key=unit_key,
                service_type=service_type,
                unit_type=unit_type,
                unit_price_cents=price,
                multiplier=multiplier,
                label=label,
                active=True,
            )
        )
    db.commit()


def make_partner(db, service_type="LAUNDRY", phone=LAUNDRY_PARTNER_PHONE, zips=("10001",), active=True):
    partner = models.Partner(
        name=f"{service_type.title()} Partner",
        phone=phone,
        service_type=service_type,
        service_zips=list(zips),
        active=active,
    )
    db.add(partner)
    db.commit()
    return partner


def make_slot(db, partner, start: datetime, hours: int = 2, max_units: int = 5, reserved: int = 0):
    slot = models.CapacitySlot(
        partner_id=partner.id,
        service_type=partner.service_type,
        slot_start=start,
        slot_end=start + timedelta(hours=hours),
        max_units=max_units,
        reserved_units=reserved,
    )
    db.add(slot)
    db.commit()
    return slot


def tomorrow_at(hour: int) -> datetime:
    return (utcnow() + timedelta(days=1)).replace(hour=hour, minute=0, second=0, microsecond=0)


@pytest.fixture
def world(db):
    """Pricing rules, one partner per service and a few future slots"""
    seed_pricing(db)
    laundry = make_partner(db, "LAUNDRY", LAUNDRY_PARTNER_PHONE)
    cleaning = make_partner(db, "CLEANING", CLEANING_PARTNER_PHONE)
    return {
        "laundry_partner": laundry,
        "cleaning_partner": cleaning,
        "laundry_slot": make_slot(db, laundry, tomorrow_at(10)),
        "laundry_slot_2": make_slot(db, laundry, tomorrow_at(14)),
        "cleaning_slot": make_slot(db, cleaning, tomorrow_at(12), hours=3),
        "cleaning_slot_2": make_slot(db, cleaning, tomorrow_at(16), hours=3),
    }


def order_request(slot, service_type="LAUNDRY", key="order-key-0001", **overrides) -> OrderCreate:
    data = {
        "idempotency_key": key,
        "service_type": service_type,
        "slot_id": slot.id,
        "address": {"line1": "12 Main St", "city": "New York", "state": "NY", "zip": "10001"},
        "details": {},
        "customer_phone": CUSTOMER_PHONE,
    }
    data.update(overrides)
    return OrderCreate(**data)


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================


class FakeGateway:
    """In-memory processor; queue outcomes per call type"""

    def __init__(self):
        self.calls = []
        self.capture_outcomes = []
        self.setup_outcomes = []
        self.fail_settlement: Optional[PaymentFailure] = None

    async def create_setup_intent(self, idempotency_key, metadata):
        self.calls.append(("setup", idempotency_key, metadata))
        if self.setup_outcomes:
            outcome = self.setup_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return IntentResult(id="seti_1", status="requires_payment_method", client_secret="seti_1_secret")

    async def create_payment_intent(
        self, amount_cents, idempotency_key, metadata, payment_method=None, off_session=False
    ):
        self.calls.append(("capture", idempotency_key, amount_cents, payment_method, off_session))
        if self.capture_outcomes:
            outcome = self.capture_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return IntentResult(id="pi_1", status="succeeded", amount_cents=amount_cents)

    async def cancel_payment_intent(self, intent_id, idempotency_key):
        self.calls.append(("void", intent_id, idempotency_key))
        if self.fail_settlement:
            raise self.fail_settlement
        return IntentResult(id=intent_id, status="canceled")

    async def refund(self, intent_id, amount_cents, idempotency_key):
        self.calls.append(("refund", intent_id, amount_cents, idempotency_key))
        if self.fail_settlement:
            raise self.fail_settlement
        return IntentResult(id="re_1", status="succeeded", amount_cents=amount_cents)

    def calls_of(self, kind):
        return [c for c in self.calls if c[0] == kind]


class FakeSender:
    """Records outbound SMS; phones in `failing` raise like a relay error"""

    def __init__(self):
        self.sent = []
        self.failing = set()

    async def send(self, to_phone, body):
        if to_phone in self.failing:
            raise SmsDeliveryError("relay unavailable")
        self.sent.append((to_phone, body))
        return f"SM{len(self.sent):04d}"

    def to(self, phone):
        return [body for to_phone, body in self.sent if to_phone == phone]


class FakeClassifier:
    """Returns a fixed answer (or raises) and counts calls"""

    def __init__(self, result=None, error: Optional[Exception] = None, delay: float = 0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []

    async def classify(self, message, state):
        self.calls.append((message, state))
        if self.delay:
            import asyncio

            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def unknown_classifier():
    return FakeClassifier(ParsedIntent(Intent.UNKNOWN, Confidence.LOW, source="classifier"))


# ============================================================================
# API
# ============================================================================


@pytest.fixture
def client(session_factory, gateway, unknown_classifier):
    from homeservices.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_intent_classifier] = lambda: unknown_classifier
    # No context manager: the lifespan would create tables on the import-time engine
    yield TestClient(app)
    app.dependency_overrides.clear()


ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}
