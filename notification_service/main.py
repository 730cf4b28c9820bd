import logging
import threading
from contextlib import asynccontextmanager
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from common.job_queue import Worker
from common.queues import get_notification_queue
from common.redis_client import redis_client
from common.settings import settings
from notification_service.notifier import NotificationSender

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

sender = NotificationSender(redis_client, webhook_url=settings.notification_webhook_url)
worker = None
consumer_thread = None

@asynccontextmanager
async def lifespan(app: FastAPI):
    global worker, consumer_thread
    worker = Worker(get_notification_queue(), sender.handle, poll_timeout=settings.worker_poll_timeout)
    consumer_thread = threading.Thread(target=worker.run, daemon=True, name="notifications")
    consumer_thread.start()
    yield
    worker.stop()
    await run_in_threadpool(consumer_thread.join, 10.0)

app = FastAPI(title="Notification Service", lifespan=lifespan)

@app.get("/health")
async def health():
    redis_ok = await run_in_threadpool(redis_client.ping)
    running = consumer_thread is not None and consumer_thread.is_alive()
    return {"ok": redis_ok and running, "redis": redis_ok, "sent": sender.sent, "duplicates": sender.duplicates}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8003)
