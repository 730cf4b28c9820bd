from enum import Enum

class OrderStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    PROCESSING = "PROCESSING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

class ResellerStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    REJECTED = "REJECTED"

class TransactionType(str, Enum):
    ORDER_PAYMENT = "ORDER_PAYMENT"
    COMMISSION_EARNING = "COMMISSION_EARNING"
    WITHDRAWAL = "WITHDRAWAL"
    REFUND = "REFUND"

class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class OutboxStatus(str, Enum):
    NEW = "new"
    SENT = "sent"

PAYMENT_PROVIDER_NAME = "Paystack"
ORDER_NUMBER_PATTERN = r"^ORD-\d+$"
