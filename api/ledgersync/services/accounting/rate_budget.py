"""Rate budget pre-spread for attachment sync jobs.

Instead of throttling at call time (which would park a worker and waste a
concurrency slot), every attachment job gets a start delay when it is
created. Job ``i`` of a run starts ``i`` call-slots after the first, so once
dequeued each job can assume it owns its slice of the provider's budget.

This only holds while a single orchestrator run owns the provider budget.
Overlapping runs for the same provider (different teams) are not coordinated.
"""
import math
from dataclasses import dataclass
from decimal import Decimal

SAFETY_MARGIN = Decimal("1.1")


@dataclass(frozen=True)
class RateLimitConfig:
    calls_per_minute: int
    max_concurrent: int     # parallel uploads inside one attachment job
    call_delay_ms: int      # minimum spacing between call starts


RATE_LIMITS: dict[str, RateLimitConfig] = {
    "xero": RateLimitConfig(calls_per_minute=60, max_concurrent=3, call_delay_ms=1000),
    "quickbooks": RateLimitConfig(calls_per_minute=500, max_concurrent=10, call_delay_ms=1000),
    # 25 calls per 5 seconds
    "fortnox": RateLimitConfig(calls_per_minute=300, max_concurrent=4, call_delay_ms=250),
}

DEFAULT_RATE_LIMIT = RateLimitConfig(calls_per_minute=60, max_concurrent=2, call_delay_ms=1000)


def get_rate_limit(provider: str) -> RateLimitConfig:
    return RATE_LIMITS.get(provider, DEFAULT_RATE_LIMIT)


def attachment_job_delay(provider: str, job_index: int) -> int:
    """Start delay in milliseconds for the ``job_index``-th attachment job of a run."""
    if job_index < 0:
        raise ValueError("job_index must be >= 0")
    calls_per_minute = get_rate_limit(provider).calls_per_minute
    slot_ms = math.ceil(Decimal(60_000) / Decimal(calls_per_minute) * SAFETY_MARGIN)
    return job_index * slot_ms


@dataclass
class JobCounter:
    """Monotonic attachment job index shared by every phase of one run."""
    next_index: int = 0

    def take(self) -> int:
        index = self.next_index
        self.next_index += 1
        return index
