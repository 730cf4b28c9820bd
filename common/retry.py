"""
Backoff policies for retrying failed queue jobs
"""
import random
from typing import Any, Dict, Optional

FIXED = "fixed"
EXPONENTIAL = "exponential"

class BackoffConfig:
    """How long a failed job waits before its next attempt"""
    def __init__(
        self,
        type: str = FIXED,
        delay_ms: int = 5000,
        max_delay_ms: int = 3_600_000,
        jitter: bool = False,
    ):
        if type not in (FIXED, EXPONENTIAL):
            raise ValueError(f"unknown backoff type: {type}")
        if delay_ms < 0:
            raise ValueError("backoff delay must not be negative")
        self.type = type
        self.delay_ms = delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter = jitter

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "delay_ms": self.delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "BackoffConfig":
        if not raw:
            return cls()
        return cls(
            type=raw.get("type", FIXED),
            delay_ms=int(raw.get("delay_ms", 5000)),
            max_delay_ms=int(raw.get("max_delay_ms", 3_600_000)),
            jitter=bool(raw.get("jitter", False)),
        )

    def __eq__(self, other):
        return isinstance(other, BackoffConfig) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"BackoffConfig(type={self.type!r}, delay_ms={self.delay_ms})"

def calculate_delay(attempt: int, config: BackoffConfig) -> int:
    """Delay in milliseconds before retry number `attempt` (1-based)"""
    if config.type == EXPONENTIAL:
        delay = config.delay_ms * (2 ** (max(attempt, 1) - 1))
    else:
        delay = config.delay_ms
    delay = min(delay, config.max_delay_ms)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay = int(delay * (0.5 + random.random() * 0.5))

    return int(delay)

# Common backoff configurations
def payment_backoff(settings) -> BackoffConfig:
    return BackoffConfig(type=settings.payment_job_backoff_type, delay_ms=settings.payment_job_backoff_ms)

def notification_backoff(settings) -> BackoffConfig:
    return BackoffConfig(type=EXPONENTIAL, delay_ms=settings.notification_job_backoff_ms, jitter=True)
