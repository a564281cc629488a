"""Retry and exponential backoff for a single logical request."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from .config import Config
from .errors import AttemptAborted, AuthenticationError, ConversationCreationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_STATUS_CODES = (401, 403)


class AbortSignal:
    """One-shot cancellation flag shared by an attempt and its observers."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise AttemptAborted(self.reason or "Attempt aborted")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RetryPolicy:
    """Decides whether a failed attempt is retried and how long to wait.

    ``max_attempts`` counts the first try, so the default allows three
    retries with delays of 1000, 2000 and 4000 ms.
    """

    max_attempts: int = 4
    base_delay_ms: int = 1000

    @classmethod
    def from_config(cls, config: Config) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_retry_delay_ms,
        )

    def delay_ms(self, retry_number: int) -> int:
        """Delay before the given 1-indexed retry."""
        if retry_number < 1:
            raise ValueError("retry_number starts at 1")
        return self.base_delay_ms * 2 ** (retry_number - 1)

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (AuthenticationError, ConversationCreationError, AttemptAborted)):
            return False
        return getattr(error, "status_code", None) not in AUTH_STATUS_CODES

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return self.is_retryable(error) and attempt < self.max_attempts


class RetryController:
    """Runs one logical request, retrying failed attempts under a policy.

    The attempt counter belongs to this controller, so each send operation
    gets its own budget.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        abort_signal: Optional[AbortSignal] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.abort_signal = abort_signal or AbortSignal()
        self._sleep = sleep
        self.attempt = 0
        self.scheduled_delays_ms: List[int] = []

    @property
    def retry_count(self) -> int:
        return max(self.attempt - 1, 0)

    async def run(self, operation: Callable[[int], Awaitable[T]]) -> T:
        """Call ``operation(attempt_number)`` until it succeeds or gives up.

        Raises the last failure when it is not retryable or the budget is
        spent, and ``AttemptAborted`` once the abort signal is set.
        """
        while True:
            self.abort_signal.raise_if_aborted()
            self.attempt += 1
            try:
                return await operation(self.attempt)
            except AttemptAborted:
                raise
            except Exception as e:
                if self.abort_signal.aborted:
                    logger.debug(f"Attempt {self.attempt} failed after abort: {e}")
                    raise AttemptAborted(self.abort_signal.reason or "Attempt aborted") from e

                failure = f"Agent request failed (attempt {self.attempt}/{self.policy.max_attempts}): {e}"
                if not self.policy.should_retry(e, self.attempt):
                    logger.error(failure)
                    if self.policy.is_retryable(e):
                        logger.error("Max retries reached")
                    else:
                        logger.error(f"Non-retryable error: {type(e).__name__}")
                    raise

                delay = self.policy.delay_ms(self.attempt)
                self.scheduled_delays_ms.append(delay)
                logger.warning(f"{failure}, retrying in {delay}ms...")
                await self._wait(delay)

    async def _wait(self, delay_ms: int) -> None:
        """Sleep for the backoff delay, returning early if aborted."""
        sleeper = asyncio.ensure_future(self._sleep(delay_ms / 1000))
        aborter = asyncio.ensure_future(self.abort_signal.wait())
        try:
            await asyncio.wait({sleeper, aborter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, aborter):
                if not task.done():
                    task.cancel()
        self.abort_signal.raise_if_aborted()
