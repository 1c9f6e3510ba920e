"""
Retry policy shared by every driver.

The delay before retry ``n`` (1-based) is::

    min(initial_interval * multiplier ** (n - 1), max_interval) * (1 + U(-jitter, +jitter))

so the effective ceiling is ``max_interval * (1 + random_factor)``.
"""

import random
from dataclasses import dataclass

from brokerz.core.exceptions import InvalidConfigurationError


@dataclass
class RetryPolicy:
    """
    Exponential back-off with random jitter.

    Attributes:
        max_retries: Default retry ceiling for new messages
        initial_interval: Delay before the first retry, in seconds
        max_interval: Upper bound of the un-jittered delay, in seconds
        multiplier: Growth factor between consecutive retries (>= 1)
        random_factor: Jitter fraction in [0, 1]
    """

    max_retries: int = 3
    initial_interval: float = 1.0
    max_interval: float = 30.0
    multiplier: float = 2.0
    random_factor: float = 0.1

    def validate(self) -> None:
        if self.max_retries < 0:
            msg = "max_retries must be >= 0"
            raise InvalidConfigurationError(msg, field="max_retries", value=self.max_retries)
        if self.initial_interval < 0:
            msg = "initial_interval must be >= 0"
            raise InvalidConfigurationError(msg, field="initial_interval", value=self.initial_interval)
        if self.max_interval < self.initial_interval:
            msg = "max_interval must be >= initial_interval"
            raise InvalidConfigurationError(msg, field="max_interval", value=self.max_interval)
        if self.multiplier < 1:
            msg = "multiplier must be >= 1"
            raise InvalidConfigurationError(msg, field="multiplier", value=self.multiplier)
        if not 0 <= self.random_factor <= 1:
            msg = "random_factor must be within [0, 1]"
            raise InvalidConfigurationError(msg, field="random_factor", value=self.random_factor)

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay before retry ``attempt``."""
        if attempt < 1 or self.initial_interval == 0:
            return 0.0
        # Cap the exponent so huge attempt counts cannot overflow the float.
        exponent = min(attempt - 1, 64)
        return min(self.initial_interval * self.multiplier**exponent, self.max_interval)

    def compute_delay(self, attempt: int) -> float:
        """Jittered delay in seconds before retry ``attempt``."""
        delay = self.base_delay(attempt)
        if delay == 0 or self.random_factor == 0:
            return delay
        jitter = random.uniform(-self.random_factor, self.random_factor)
        return max(0.0, delay * (1 + jitter))

    @property
    def ceiling(self) -> float:
        """Largest delay compute_delay() can return."""
        return self.max_interval * (1 + self.random_factor)

    @classmethod
    def immediate(cls, max_retries: int = 3) -> "RetryPolicy":
        """Policy that republishes failed messages without waiting."""
        return cls(
            max_retries=max_retries,
            initial_interval=0.0,
            max_interval=0.0,
            multiplier=1.0,
            random_factor=0.0,
        )
