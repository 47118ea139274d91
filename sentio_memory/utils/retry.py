"""
Resilient executor: retry an async operation with a pluggable backoff policy.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import ConfigurationError, SentioMemoryError
from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

RetryCallback = Callable[[str, int, float, SentioMemoryError], None]


class BackoffPolicy(ABC):
    """Computes the pause before the next attempt."""

    @abstractmethod
    def delay(self, attempt: int, error: SentioMemoryError) -> float:
        """
        Args:
            attempt: 0-based index of the attempt that just failed
            error: The error raised by that attempt

        Returns:
            Seconds to sleep before attempt + 1
        """


class LinearBackoff(BackoffPolicy):
    """base_delay * (attempt + 1): 1s, 2s, 3s... for database operations."""

    def __init__(self, base_delay: float = 1.0):
        self.base_delay = base_delay

    def delay(self, attempt: int, error: SentioMemoryError) -> float:
        return self.base_delay * (attempt + 1)


class ExponentialBackoff(BackoffPolicy):
    """base_delay * 2**attempt for HTTP APIs, optionally capped and stretched to the server's Retry-After."""

    def __init__(self, base_delay: float = 1.0, max_delay: Optional[float] = None, honor_retry_after: bool = True):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.honor_retry_after = honor_retry_after

    def delay(self, attempt: int, error: SentioMemoryError) -> float:
        delay = self.base_delay * (2**attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        retry_after = getattr(error, 'retry_after', None)
        if self.honor_retry_after and retry_after is not None:
            delay = max(delay, float(retry_after))
        return delay


class ResilientExecutor:
    """Runs an operation up to max_retries + 1 times, sleeping between retryable failures."""

    def __init__(self,
                 max_retries: int = 3,
                 policy: Optional[BackoffPolicy] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 on_retry: Optional[RetryCallback] = None):
        """
        Initialize the executor.

        Args:
            max_retries: Retries after the first attempt
            policy: Backoff policy, LinearBackoff(1.0) if None
            sleep: Awaitable sleep, replaceable in tests
            on_retry: Called with (operation_name, attempt, delay, error) before each backoff
        """
        if max_retries < 0:
            raise ConfigurationError(f'max_retries must be >= 0, got {max_retries}')

        self.max_retries = max_retries
        self.policy = policy or LinearBackoff()
        self._sleep = sleep
        self._on_retry = on_retry

    async def execute(self, operation: Callable[[], Awaitable[T]], operation_name: str = 'operation') -> T:
        """
        Execute an operation with retries.

        Args:
            operation: Zero-argument callable returning an awaitable
            operation_name: Name used in log lines

        Returns:
            The operation's result

        Raises:
            SentioMemoryError: The error of the last attempt, with attempts set
        """
        last_error: Optional[SentioMemoryError] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = await operation()
            except SentioMemoryError as e:
                last_error = e
                e.attempts = attempt + 1

                if attempt < self.max_retries and e.is_retryable():
                    delay = self.policy.delay(attempt, e)
                    logger.warning(f'{operation_name} failed on attempt {attempt + 1}/{self.max_retries + 1} '
                                   f'[{e.error_code}]: {e}. Retrying in {delay:.2f}s')
                    if self._on_retry is not None:
                        self._on_retry(operation_name, attempt, delay, e)
                    await self._sleep(delay)
                    continue
                break
            else:
                if attempt > 0:
                    logger.info(f'{operation_name} succeeded after {attempt} retries')
                return result

        if last_error.is_fatal():
            logger.error(f'{operation_name} failed with fatal error [{last_error.error_code}]: {last_error}')
        elif last_error.is_retryable():
            logger.error(f'{operation_name} failed after {last_error.attempts} attempts '
                         f'[{last_error.error_code}]: {last_error}')
        else:
            logger.debug(f'{operation_name} failed [{last_error.error_code}]: {last_error}')
        raise last_error
