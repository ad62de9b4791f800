import logging
import random
import time

from crmsync.errors import RateLimited

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Exponential backoff for provider calls.

    Retry ``n`` (starting at 1) waits ``base_delay * multiplier ** n`` seconds,
    capped at ``max_delay``, or the provider's ``retry_after`` when that is
    larger. After ``max_retries`` retries the last error propagates.
    """

    def __init__(self, max_retries=3, base_delay=1.0, multiplier=3, jitter=0.0, max_delay=300.0, sleep=None):
        self.max_retries = max(0, int(max_retries))
        self.base_delay = max(0.0, float(base_delay))
        self.multiplier = max(1.0, float(multiplier))
        self.jitter = max(0.0, float(jitter or 0))
        self.max_delay = max(0.0, float(max_delay))
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, sleep=None):
        return cls(
            max_retries=config.get("retry_max_retries", 3),
            base_delay=config.get("retry_base_delay_sec", 1.0),
            multiplier=config.get("retry_multiplier", 3),
            jitter=config.get("retry_jitter_sec", 0.0),
            sleep=sleep,
        )

    def delay_for(self, attempt, retry_after=None):
        delay = min(self.base_delay * (self.multiplier ** max(1, int(attempt))), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        if retry_after is not None and retry_after > delay:
            delay = float(retry_after)
        return delay

    def call(self, fn, *args, retry_on=(RateLimited,), **kwargs):
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except retry_on as exc:
                if attempt >= self.max_retries:
                    logger.warning("Giving up after %s retries: %s", attempt, exc)
                    raise
                attempt += 1
                delay = self.delay_for(attempt, getattr(exc, "retry_after", None))
                logger.info("Retry %s/%s in %.1fs after: %s", attempt, self.max_retries, delay, exc)
                (self._sleep or time.sleep)(delay)
