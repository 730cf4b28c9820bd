import os

# must be in place before common.settings is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PAYMENT_SECRET_KEY"] = "sk_test_9f2c1a7e"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["ADMIN_EMAIL"] = "admin@joybundles.com"
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)
os.environ.pop("API_PREFIX", None)

import json
from decimal import Decimal

import fakeredis
import pytest
from sqlalchemy.orm import sessionmaker

from common.queues import build_payment_queue, build_notification_queue
from common.security import compute_signature
from common.settings import settings
from order_service.constants import OrderStatus, PaymentStatus, ResellerStatus
from order_service.db import build_engine, init_db
from order_service.models import Bundle, Order, Reseller

ORDER_NUMBER = "ORD-981152373"

class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

def charge_event(reference=ORDER_NUMBER, amount=1700, charge_id=5012345678, channel="mobile_money"):
    return {
        "event": "charge.success",
        "data": {
            "id": charge_id,
            "reference": reference,
            "status": "success",
            "amount": amount,
            "currency": "GHS",
            "channel": channel,
        },
    }

def signed(payload, secret=None):
    """Serialized body plus the signature header value the gateway would send"""
    body = json.dumps(payload).encode("utf-8")
    return body, compute_signature(body, secret or settings.payment_secret_key)

def seed_catalog(session_factory, order_numbers=(ORDER_NUMBER,)):
    """Reseller KOFI24 (5.00 commission), a 12.00 bundle and one 17.00 order per number"""
    with session_factory() as db:
        reseller = Reseller(
            reseller_code="RES-001",
            referral_code="KOFI24",
            business_name="Kofi Data Hub",
            status=ResellerStatus.ACTIVE.value,
            preset_commission=Decimal("5.00"),
            total_earnings=Decimal("0.00"),
            total_sales=Decimal("0.00"),
            total_orders=0,
        )
        bundle = Bundle(
            name="MTN 5GB",
            network="MTN",
            volume="5GB",
            cost_price=Decimal("10.00"),
            base_price=Decimal("12.00"),
            active=True,
        )
        db.add_all([reseller, bundle])
        db.flush()
        orders = [
            Order(
                order_number=number,
                customer_phone="0241234567",
                bundle_id=bundle.id,
                reseller_id=reseller.id,
                network=bundle.network,
                bundle_name=bundle.name,
                cost_price=Decimal("10.00"),
                base_price=Decimal("12.00"),
                selling_price=Decimal("17.00"),
                commission=Decimal("5.00"),
                profit=Decimal("2.00"),
                status=OrderStatus.ACCEPTED.value,
                payment_status=PaymentStatus.PENDING.value,
            )
            for number in order_numbers
        ]
        db.add_all(orders)
        db.commit()
        return {"reseller_id": reseller.id, "bundle_id": bundle.id, "order_ids": [o.id for o in orders]}

@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)

@pytest.fixture
def seeded(session_factory):
    return seed_catalog(session_factory)

@pytest.fixture
def redis_conn():
    return fakeredis.FakeRedis(decode_responses=True)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def payment_queue(redis_conn, clock):
    return build_payment_queue(redis_conn, clock=clock)

@pytest.fixture
def notification_queue(redis_conn, clock):
    return build_notification_queue(redis_conn, clock=clock)
