# services/extraction/retry.py
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from services.batch.errors import MaxRetriesExceeded, TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 10.0
    per_attempt_timeout_s: float = 60.0
    jitter_s: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_s < 0 or self.max_delay_s < 0 or self.jitter_s < 0:
            raise ValueError("delays must be >= 0")
        if self.per_attempt_timeout_s <= 0:
            raise ValueError("per_attempt_timeout_s must be > 0")


class RetryExecutor:
    """
    Bounded retry with exponential backoff and jitter.

    Contract:
      - operation(timeout_s) performs one remote attempt bounded by timeout_s
      - TransientRemoteError  -> sleep, then retry while retries remain
      - any other exception   -> propagated immediately (PermanentRemoteError etc.)
      - retries exhausted     -> MaxRetriesExceeded(last_error)
    Total calls never exceed 1 + max_retries.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Optional[Callable[[float, float], float]] = None,
    ) -> None:
        self._sleep = sleep
        self._jitter = jitter or random.uniform

    def backoff_delay(self, attempt: int, config: RetryConfig) -> float:
        """Delay slept after failed attempt number `attempt` (1-based)."""
        base = config.base_delay_s * (2 ** (attempt - 1))
        jitter = self._jitter(0.0, config.jitter_s) if config.jitter_s > 0 else 0.0
        return min(base + jitter, config.max_delay_s)

    def execute(self, operation: Callable[[float], T], config: Optional[RetryConfig] = None) -> T:
        cfg = config or RetryConfig()
        attempt = 1
        retries_left = cfg.max_retries

        while True:
            try:
                return operation(cfg.per_attempt_timeout_s)
            except TransientRemoteError as e:
                if retries_left <= 0:
                    logger.error(
                        "Remote call failed after %d attempts (%s): %s", attempt, e.kind, e
                    )
                    raise MaxRetriesExceeded(attempt, e) from e

                delay = self.backoff_delay(attempt, cfg)
                logger.warning(
                    "Retryable %s error (attempt %d/%d): %s; retrying in %.2fs",
                    e.kind,
                    attempt,
                    1 + cfg.max_retries,
                    e,
                    delay,
                )
                self._sleep(delay)
                attempt += 1
                retries_left -= 1
