from sqlalchemy import (
    Column, Integer, String, BigInteger, Boolean, DateTime, Numeric, Text,
    ForeignKey, UniqueConstraint, Index, func,
)
from sqlalchemy.orm import declarative_base, relationship

from order_service.constants import (
    OrderStatus, PaymentStatus, ResellerStatus, TransactionStatus, OutboxStatus,
)

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
BigId = BigInteger().with_variant(Integer(), "sqlite")
Money = Numeric(12, 2)
Total = Numeric(14, 2)

class Reseller(Base):
    __tablename__ = "resellers"
    id = Column(BigId, primary_key=True, autoincrement=True)
    reseller_code = Column(String(16), unique=True, nullable=False)  # RES-001
    referral_code = Column(String(8), unique=True, nullable=False, index=True)
    business_name = Column(String(120))
    status = Column(String(16), nullable=False, default=ResellerStatus.ACTIVE.value)
    preset_commission = Column(Money, nullable=False, default=5)
    # only ever changed through atomic increments, see reconciliation_service
    total_earnings = Column(Total, nullable=False, default=0)
    total_sales = Column(Total, nullable=False, default=0)
    total_orders = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class Bundle(Base):
    __tablename__ = "bundles"
    id = Column(BigId, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    network = Column(String(16), nullable=False)
    volume = Column(String(16), nullable=False)  # e.g. "5GB"
    cost_price = Column(Money, nullable=False)
    base_price = Column(Money, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())

class Order(Base):
    __tablename__ = "orders"
    id = Column(BigId, primary_key=True, autoincrement=True)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    customer_phone = Column(String(16), nullable=False, index=True)
    bundle_id = Column(BigId, ForeignKey("bundles.id"), nullable=False)
    reseller_id = Column(BigId, ForeignKey("resellers.id"), nullable=True)
    network = Column(String(16), nullable=False)
    bundle_name = Column(String(100), nullable=False)
    cost_price = Column(Money, nullable=False)
    base_price = Column(Money, nullable=False)
    selling_price = Column(Money, nullable=False)
    commission = Column(Money, nullable=False, default=0)
    profit = Column(Money, nullable=False)
    status = Column(String(16), nullable=False, default=OrderStatus.ACCEPTED.value, index=True)
    payment_status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    payment_reference = Column(String(64))
    payment_method = Column(String(32))
    failure_reason = Column(String(500))
    paid_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    reseller = relationship("Reseller")
    bundle = relationship("Bundle")

class Transaction(Base):
    """Append-only ledger entry"""
    __tablename__ = "transactions"
    __table_args__ = (
        # one ledger entry per order per event type, whatever the retry history
        UniqueConstraint("order_id", "type", name="uq_transactions_order_type"),
        Index("ix_transactions_status_type", "status", "type"),
    )
    id = Column(BigId, primary_key=True, autoincrement=True)
    transaction_number = Column(String(32), unique=True, nullable=False)
    order_id = Column(BigId, ForeignKey("orders.id"), nullable=True, index=True)
    reseller_id = Column(BigId, ForeignKey("resellers.id"), nullable=True, index=True)
    type = Column(String(24), nullable=False)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False, default="GHS")
    status = Column(String(16), nullable=False, default=TransactionStatus.PENDING.value)
    payment_provider = Column(String(32))
    provider_reference = Column(String(64))
    created_at = Column(DateTime, server_default=func.now(), index=True)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigId, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=OutboxStatus.NEW.value, index=True)  # new|sent
    created_at = Column(DateTime, server_default=func.now())
    trace_id = Column(String(64))
    sent_at = Column(DateTime)
