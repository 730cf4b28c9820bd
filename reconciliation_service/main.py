#!/usr/bin/env python3
"""
Reconciliation Service
Consumes the payment-processing queue and applies each charge to the order,
the reseller's balance and the ledger. Also runs the outbox relay that hands
committed admin alerts to the notification queue.
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import List
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from common.job_queue import Worker
from common.queues import get_payment_queue, get_notification_queue
from common.redis_client import redis_client
from common.settings import settings
from order_service import outbox_worker
from order_service.db import SessionLocal, init_db
from reconciliation_service.reconciler import PaymentReconciler

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

workers: List[Worker] = []
threads: List[threading.Thread] = []
relay_stop = threading.Event()

def start_background():
    payment_queue = get_payment_queue()
    notification_queue = get_notification_queue()
    reconciler = PaymentReconciler(SessionLocal)

    for i in range(max(settings.worker_concurrency, 1)):
        worker = Worker(payment_queue, reconciler.handle, poll_timeout=settings.worker_poll_timeout)
        workers.append(worker)
        threads.append(threading.Thread(target=worker.run, daemon=True, name=f"reconcile-{i}"))

    threads.append(threading.Thread(
        target=outbox_worker.run,
        args=(SessionLocal, {notification_queue.name: notification_queue}, relay_stop),
        daemon=True,
        name="outbox-relay",
    ))
    for t in threads:
        t.start()
    logger.info(f"🚀 Reconciliation service started with {len(workers)} worker(s)")

def stop_background(timeout: float = 10.0):
    for worker in workers:
        worker.stop()
    relay_stop.set()
    for t in threads:
        t.join(timeout)
    logger.info("Reconciliation service stopped")

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    start_background()
    yield
    await run_in_threadpool(stop_background)

app = FastAPI(title="Reconciliation Service", version="1.0.0", lifespan=lifespan)

@app.get("/health")
async def health():
    redis_ok = await run_in_threadpool(redis_client.ping)
    alive = sum(1 for t in threads if t.is_alive())
    return {"ok": redis_ok and alive == len(threads), "service": "reconciliation", "redis": redis_ok, "threads_alive": alive}

@app.get("/stats")
def stats():
    return {
        "workers": [
            {"name": w.token, "processed": w.processed, "failed": w.failed, "stopped": w.stopped}
            for w in workers
        ],
        "queue": get_payment_queue().get_job_counts(),
        "redis": redis_client.get_cache_stats(),
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
