"""
Webhook ingest: authenticate, enqueue, answer immediately
"""
import json

import pytest
import redis
from fastapi.testclient import TestClient

from common.job_queue import WAITING
from common.queues import get_payment_queue
from common.security import compute_signature
from common.settings import settings
from webhook_service.main import app

from conftest import charge_event, signed

EMPTY = {"waiting": 0, "active": 0, "delayed": 0, "completed": 0, "failed": 0}

class BrokenQueue:
    name = "payment-processing"

    def add(self, *args, **kwargs):
        raise redis.ConnectionError("Error 111 connecting to redis:6379. Connection refused.")

@pytest.fixture
def client(payment_queue):
    app.dependency_overrides[get_payment_queue] = lambda: payment_queue
    yield TestClient(app)
    app.dependency_overrides.clear()

def post_webhook(client, body, signature, provider="paystack"):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers[f"x-{provider}-signature"] = signature
    return client.post(f"/webhooks/{provider}", content=body, headers=headers)

class TestWebhookIngest:
    def test_signed_charge_is_queued(self, client, payment_queue):
        payload = charge_event()
        body, signature = signed(payload)

        response = post_webhook(client, body, signature)

        assert response.status_code == 200
        assert response.json() == {"success": True, "job_id": "1"}
        assert payment_queue.get_job_counts()[WAITING] == 1
        job = payment_queue.get_job("1")
        assert job.data == payload
        assert job.opts.attempts == 5
        assert job.trace_id == response.headers["X-Trace-ID"]

    def test_tampered_amount_rejected_without_queueing(self, client, payment_queue):
        body, signature = signed(charge_event(amount=1700))
        tampered = body.replace(b'"amount": 1700', b'"amount": 100')
        assert tampered != body

        response = post_webhook(client, tampered, signature)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert payment_queue.get_job_counts() == EMPTY

    def test_missing_signature_rejected(self, client, payment_queue):
        body, _ = signed(charge_event())
        response = post_webhook(client, body, None)
        assert response.status_code == 400
        assert payment_queue.get_job_counts() == EMPTY

    def test_signature_with_other_secret_rejected(self, client, payment_queue):
        body, signature = signed(charge_event(), secret="sk_live_attacker")
        assert post_webhook(client, body, signature).status_code == 400
        assert payment_queue.get_job_counts() == EMPTY

    def test_signed_non_json_body_rejected(self, client, payment_queue):
        body = b"event=charge.success"
        signature = compute_signature(body, settings.payment_secret_key)

        response = post_webhook(client, body, signature)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PAYLOAD"
        assert payment_queue.get_job_counts() == EMPTY

    def test_signed_json_array_rejected(self, client, payment_queue):
        body, signature = signed([charge_event()])
        response = post_webhook(client, body, signature)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PAYLOAD"

    def test_other_events_are_queued_too(self, client, payment_queue):
        body, signature = signed({"event": "transfer.success", "data": {"reference": "TRF-1"}})
        assert post_webhook(client, body, signature).status_code == 200
        assert payment_queue.get_job_counts()[WAITING] == 1

    def test_unknown_provider(self, client, payment_queue):
        body, signature = signed(charge_event())
        response = post_webhook(client, body, signature, provider="stripe")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "UNSUPPORTED_PROVIDER"
        assert payment_queue.get_job_counts() == EMPTY

    def test_queue_outage_returns_500_so_gateway_retries(self):
        app.dependency_overrides[get_payment_queue] = lambda: BrokenQueue()
        try:
            body, signature = signed(charge_event())
            response = post_webhook(TestClient(app), body, signature)
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "QUEUE_UNAVAILABLE"

    def test_replayed_delivery_queued_again(self, client, payment_queue):
        # dedupe happens in reconciliation, ingest accepts every authentic delivery
        body, signature = signed(charge_event())
        for _ in range(3):
            assert post_webhook(client, body, signature).status_code == 200
        assert payment_queue.get_job_counts()[WAITING] == 3
        assert json.loads(body) == payment_queue.get_job("3").data
