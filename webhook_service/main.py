#!/usr/bin/env python3
"""
Webhook Service
Authenticates payment-gateway callbacks and hands them to the payment queue.
Nothing here touches orders or balances: the response only says whether the
event was durably queued.
"""

import json
import logging
import redis
from fastapi import FastAPI, Depends, Request
from starlette.concurrency import run_in_threadpool

from common.error_handling import add_error_handlers, BusinessLogicError, ServiceError, ErrorCodes
from common.job_queue import JobQueue
from common.queues import get_payment_queue, payment_job_options
from common.redis_client import redis_client
from common.security import verify_signature
from common.settings import settings
from common.tracing import webhook_tracer, tracing_middleware, get_current_trace_id
from queue_dashboard.main import app as dashboard_app

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Webhook Service", version="1.0.0")
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, webhook_tracer)

# Queue management board, as an operational view next to the ingest endpoint
app.mount("/admin/queues", dashboard_app)

def _reference_of(payload: dict):
    data = payload.get("data")
    return data.get("reference") if isinstance(data, dict) else None

# Public route, no auth middleware: the gateway calls this and the HMAC is the auth
@app.post(f"{settings.api_prefix}/webhooks/{{provider}}")
async def receive_webhook(provider: str, request: Request, queue: JobQueue = Depends(get_payment_queue)):
    if provider.lower() != settings.payment_provider.lower():
        raise BusinessLogicError(ErrorCodes.UNSUPPORTED_PROVIDER, f"Unsupported payment provider: {provider}")

    # 1. Signature over the exact bytes received, before anything is parsed
    body = await request.body()
    signature = request.headers.get(f"x-{provider.lower()}-signature")
    if not verify_signature(body, signature, settings.payment_secret_key):
        logger.warning("🚫 Rejected webhook with invalid signature", extra={
            "security_event": "invalid_webhook_signature",
            "provider": provider,
            "client_ip": request.client.host if request.client else None,
            "signature_present": bool(signature),
            "trace_id": get_current_trace_id(),
        })
        raise BusinessLogicError(ErrorCodes.INVALID_SIGNATURE, "Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise BusinessLogicError(ErrorCodes.INVALID_PAYLOAD, "Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise BusinessLogicError(ErrorCodes.INVALID_PAYLOAD, "Webhook body must be a JSON object")

    # 2. Durable hand-off; the gateway retries us if this fails
    try:
        job = await run_in_threadpool(queue.add, payload, payment_job_options(), get_current_trace_id())
    except redis.RedisError as e:
        raise ServiceError(ErrorCodes.QUEUE_UNAVAILABLE, "Could not queue webhook event", e)

    logger.info(f"📥 Webhook queued: {_reference_of(payload)} ({payload.get('event')}) as job {job.id}",
                extra={"job_id": job.id, "trace_id": job.trace_id})

    # 3. Instant response, independent of how processing turns out
    return {"success": True, "job_id": job.id}

@app.get("/health")
async def health():
    redis_ok = await run_in_threadpool(redis_client.ping)
    return {"ok": redis_ok, "service": "webhook", "redis": redis_ok}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
