import functools
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RetryWithBackoff:
    """
    Retry logic with exponential backoff and jitter.
    Only wrap idempotent broker reads with this; mutations are never replayed.
    """
    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 0.2,
        max_delay: float = 2.0,
        backoff_factor: float = 2.0,
        jitter: bool = True,
        exceptions: Tuple[Type[Exception], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter
        self.exceptions = exceptions
        self.sleep = sleep

    def __call__(self, func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = self.initial_delay
            last_exception = None

            for attempt in range(self.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except self.exceptions as e:
                    last_exception = e
                    if attempt == self.max_retries:
                        break

                    wait = delay
                    if self.jitter:
                        wait *= (0.5 + random.random())
                    wait = min(wait, self.max_delay)

                    logger.debug(
                        "%s failed (%s), retry %d/%d in %.2fs",
                        func.__name__, e, attempt + 1, self.max_retries, wait,
                    )
                    self.sleep(wait)
                    delay *= self.backoff_factor

            raise last_exception
        return wrapper


def retry(
    max_retries: int = 3,
    initial_delay: float = 0.2,
    max_delay: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,)
):
    """Decorator for retrying functions."""
    return RetryWithBackoff(
        max_retries=max_retries,
        initial_delay=initial_delay,
        max_delay=max_delay,
        exceptions=exceptions
    )


@dataclass(frozen=True)
class PollPolicy:
    """
    Fixed-interval polling budget.

    Polling stops after ``max_attempts`` checks or once ``deadline`` seconds
    have elapsed, whichever comes first. ``max_attempts=0`` with no deadline
    polls forever.
    """

    interval: float = 2.0
    max_attempts: int = 300
    deadline: Optional[float] = None

    @property
    def unbounded(self) -> bool:
        return self.max_attempts == 0 and self.deadline is None

    def exhausted(self, attempts: int, elapsed: float) -> bool:
        if self.max_attempts and attempts >= self.max_attempts:
            return True
        if self.deadline is not None and elapsed >= self.deadline:
            return True
        return False
