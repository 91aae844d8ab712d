"""Retry policy with exponential backoff shared by the provider clients"""

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import ProviderUnavailable
from .logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry a provider call with exponential backoff

    Delays are base_delay * 2**(attempt - 1): 1s, 2s, 4s... with the default
    base delay. There is no sleep after the final attempt. When every attempt
    fails, ProviderUnavailable is raised carrying the last error.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            max_attempts: Total number of attempts (>= 1)
            base_delay: Delay before the second attempt, in seconds
            retry_on: Exception types that trigger a retry; anything else propagates
            sleep: Sleep function (injected in tests)
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.retry_on = retry_on
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt"""
        return self.base_delay * (2 ** (attempt - 1))

    def call(self, func: Callable[[], T], description: str = "provider call") -> T:
        """Run func until it succeeds or attempts are exhausted"""
        last_exception: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except self.retry_on as e:
                last_exception = e

                if attempt < self.max_attempts:
                    wait_time = self.delay_for(attempt)
                    logger.warning(
                        f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}. "
                        f"Retrying in {wait_time}s..."
                    )
                    self.sleep(wait_time)
                else:
                    logger.warning(
                        f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}"
                    )

        # All retries failed
        error_msg = f"{description} failed after {self.max_attempts} attempts: {last_exception}"
        logger.error(error_msg)
        raise ProviderUnavailable(error_msg, last_error=last_exception)

    def __repr__(self):
        return f"RetryPolicy(max_attempts={self.max_attempts}, base_delay={self.base_delay})"
