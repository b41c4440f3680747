import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to try, and how long to wait in between.

    Formula for the wait before attempt n+1 (n failed attempts so far):
        delay = base_interval                              (fixed)
        delay = min(base_interval * 2 ^ (n - 1), max_interval)  (backoff)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)
    """
    max_attempts: int = 120
    base_interval: float = 1.0
    backoff: bool = False
    max_interval: float = 30.0
    jitter: bool = False

    def delay_for(self, attempts: int) -> float:
        if attempts < 1:
            attempts = 1

        if self.backoff:
            # Cap the exponent; 2^20 is far beyond any sane max_interval
            delay = self.base_interval * (2 ** min(attempts - 1, 20))
            delay = min(delay, self.max_interval)
        else:
            delay = self.base_interval

        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


# Status polling after a dispatch: once a second for two minutes
POLL_POLICY = RetryPolicy(max_attempts=120, base_interval=1.0)

# Re-sending a worker report that did not get through
REPORT_POLICY = RetryPolicy(max_attempts=5, base_interval=1.0, backoff=True, max_interval=16.0, jitter=True)
