import random
import time
from decimal import Decimal, ROUND_HALF_UP

CENTS = Decimal("0.01")

def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)

def to_minor_units(amount) -> int:
    """17.00 -> 1700 (pesewas), the unit the gateway works in"""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def generate_order_number() -> str:
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"ORD-{timestamp}{random.randint(0, 999):03d}"

def generate_transaction_number() -> str:
    return f"TXN-{int(time.time() * 1000)}{random.randint(0, 999):03d}"
