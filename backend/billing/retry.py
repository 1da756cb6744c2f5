from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable

from django.conf import settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    min_delay_ms: int = 10
    max_delay_ms: int = 60
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=max(1, int(settings.INVOICE_NUMBER_RETRY_ATTEMPTS)),
            min_delay_ms=int(settings.INVOICE_NUMBER_RETRY_MIN_DELAY_MS),
            max_delay_ms=int(settings.INVOICE_NUMBER_RETRY_MAX_DELAY_MS),
        )

    def backoff_seconds(self) -> float:
        low = max(0, self.min_delay_ms)
        high = max(low, self.max_delay_ms)
        return random.uniform(low, high) / 1000

    def wait(self) -> None:
        self.sleep(self.backoff_seconds())
