import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from common.error_handling import add_error_handlers, BusinessLogicError, ErrorCodes
from common.schemas import CreateOrderRequest
from common.settings import settings
from common.tracing import order_tracer, tracing_middleware
from order_service.db import SessionLocal, init_db
from order_service.models import Order
from order_service.payments import initialize_payment
from order_service.service import initiate_order

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("🚀 Order service started")
    yield

app = FastAPI(title="Order Service", version="1.0.0", lifespan=lifespan)
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, order_tracer)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Public: customers buy through a reseller's referral link without logging in
@app.post(f"{settings.api_prefix}/orders")
def create_order(body: CreateOrderRequest, ref: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    order = initiate_order(db, referral_code=ref, bundle_id=body.bundle_id, customer_phone=body.customer_phone)
    payment_url = initialize_payment(order, body.email)
    return {
        "success": True,
        "message": "Order created, redirecting to payment...",
        "data": {"orderNumber": order.order_number, "paymentUrl": payment_url},
    }

@app.get(f"{settings.api_prefix}/orders/{{order_number}}")
def get_order(order_number: str, db: Session = Depends(get_db)):
    order = db.scalar(select(Order).where(Order.order_number == order_number))
    if order is None:
        raise BusinessLogicError(ErrorCodes.ORDER_NOT_FOUND, "Order not found")
    return {
        "orderNumber": order.order_number,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentReference": order.payment_reference,
        "paymentMethod": order.payment_method,
        "sellingPrice": str(order.selling_price),
        "commission": str(order.commission),
        "bundle": order.bundle_name,
    }

@app.get("/health")
async def health():
    return {"ok": True, "service": "order"}
