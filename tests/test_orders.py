"""
Order creation and payment initialisation
"""
import re
from decimal import Decimal

import pytest
import requests
from fastapi.testclient import TestClient
from sqlalchemy import update

from common.error_handling import BusinessLogicError, ServiceError, ErrorCodes
from order_service import main as order_main
from order_service.constants import ORDER_NUMBER_PATTERN, PaymentStatus
from order_service.helpers import to_minor_units
from order_service.models import Bundle, Reseller
from order_service.payments import initialize_payment
from order_service.service import initiate_order

class FakeGateway:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response

class GatewayResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def json(self):
        return self.payload

class TestInitiateOrder:
    def test_prices_order_from_bundle_and_commission(self, seeded, session_factory):
        with session_factory() as db:
            order = initiate_order(db, referral_code="kofi24", bundle_id=seeded["bundle_id"], customer_phone="0201112222")

        assert re.match(ORDER_NUMBER_PATTERN, order.order_number)
        assert order.selling_price == Decimal("17.00")
        assert order.commission == Decimal("5.00")
        assert order.profit == Decimal("2.00")
        assert order.payment_status == PaymentStatus.PENDING.value
        assert order.reseller_id == seeded["reseller_id"]

    def test_unknown_referral_code(self, seeded, session_factory):
        with session_factory() as db, pytest.raises(BusinessLogicError) as exc:
            initiate_order(db, referral_code="NOPE", bundle_id=seeded["bundle_id"], customer_phone="0201112222")
        assert exc.value.code == ErrorCodes.RESELLER_NOT_FOUND

    def test_suspended_reseller(self, seeded, session_factory):
        with session_factory() as db:
            db.execute(update(Reseller).values(status="SUSPENDED"))
            db.commit()
            with pytest.raises(BusinessLogicError) as exc:
                initiate_order(db, referral_code="KOFI24", bundle_id=seeded["bundle_id"], customer_phone="0201112222")
        assert exc.value.code == ErrorCodes.RESELLER_NOT_FOUND

    def test_inactive_bundle(self, seeded, session_factory):
        with session_factory() as db:
            db.execute(update(Bundle).values(active=False))
            db.commit()
            with pytest.raises(BusinessLogicError) as exc:
                initiate_order(db, referral_code="KOFI24", bundle_id=seeded["bundle_id"], customer_phone="0201112222")
        assert exc.value.code == ErrorCodes.BUNDLE_INACTIVE

    def test_missing_bundle(self, seeded, session_factory):
        with session_factory() as db, pytest.raises(BusinessLogicError) as exc:
            initiate_order(db, referral_code="KOFI24", bundle_id=999, customer_phone="0201112222")
        assert exc.value.code == ErrorCodes.BUNDLE_NOT_FOUND

class TestInitializePayment:
    def _order(self, seeded, session_factory):
        with session_factory() as db:
            return initiate_order(db, referral_code="KOFI24", bundle_id=seeded["bundle_id"], customer_phone="0201112222")

    def test_reference_is_order_number_and_amount_in_pesewas(self, seeded, session_factory):
        order = self._order(seeded, session_factory)
        gateway = FakeGateway(GatewayResponse({"status": True, "data": {"authorization_url": "https://checkout.paystack.com/abc"}}))

        url = initialize_payment(order, "buyer@example.com", session=gateway)

        assert url == "https://checkout.paystack.com/abc"
        [(endpoint, kwargs)] = gateway.calls
        assert endpoint.endswith("/transaction/initialize")
        assert kwargs["json"]["reference"] == order.order_number
        assert kwargs["json"]["amount"] == 1700
        assert kwargs["timeout"] > 0

    def test_gateway_error_raises_service_error(self, seeded, session_factory):
        order = self._order(seeded, session_factory)
        with pytest.raises(ServiceError) as exc:
            initialize_payment(order, "buyer@example.com", session=FakeGateway(error=requests.Timeout("read timed out")))
        assert exc.value.code == ErrorCodes.PAYMENT_INIT_FAILED

    def test_unexpected_gateway_body_raises_service_error(self, seeded, session_factory):
        order = self._order(seeded, session_factory)
        with pytest.raises(ServiceError):
            initialize_payment(order, "buyer@example.com", session=FakeGateway(GatewayResponse({"status": False})))

    def test_minor_units_rounding(self):
        assert to_minor_units(Decimal("17.00")) == 1700
        assert to_minor_units("12.345") == 1235

class TestOrderAPI:
    @pytest.fixture
    def client(self, seeded, session_factory, monkeypatch):
        def get_test_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        monkeypatch.setattr(order_main, "initialize_payment", lambda order, email: f"https://checkout.paystack.com/{order.order_number}")
        order_main.app.dependency_overrides[order_main.get_db] = get_test_db
        yield TestClient(order_main.app)
        order_main.app.dependency_overrides.clear()

    def test_create_order(self, client, seeded):
        response = client.post(
            "/orders",
            params={"ref": "KOFI24"},
            json={"bundle_id": seeded["bundle_id"], "customer_phone": "0201112222", "email": "buyer@example.com"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["paymentUrl"] == f"https://checkout.paystack.com/{data['orderNumber']}"

        order = client.get(f"/orders/{data['orderNumber']}").json()
        assert order["sellingPrice"] == "17.00"
        assert order["paymentStatus"] == "PENDING"

    def test_create_order_with_bad_referral(self, client, seeded):
        response = client.post(
            "/orders",
            params={"ref": "NOPE"},
            json={"bundle_id": seeded["bundle_id"], "customer_phone": "0201112222", "email": "buyer@example.com"},
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESELLER_NOT_FOUND"

    def test_payment_init_failure_is_502(self, client, seeded, monkeypatch):
        def fail(order, email):
            raise ServiceError(ErrorCodes.PAYMENT_INIT_FAILED, "Payment initialization failed")

        monkeypatch.setattr(order_main, "initialize_payment", fail)
        response = client.post(
            "/orders",
            params={"ref": "KOFI24"},
            json={"bundle_id": seeded["bundle_id"], "customer_phone": "0201112222", "email": "buyer@example.com"},
        )
        assert response.status_code == 502

    def test_missing_body_field(self, client):
        response = client.post("/orders", params={"ref": "KOFI24"}, json={"customer_phone": "0201112222"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_order(self, client):
        assert client.get("/orders/ORD-000000000").status_code == 404
