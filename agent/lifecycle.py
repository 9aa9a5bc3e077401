from __future__ import annotations
import asyncio
import random
from abc import ABC, abstractmethod
from contextlib import suppress
from typing import Callable, Optional

from agent.config import ClientConfig
from agent.handlers import Dispatcher
from agent.session import ConnectionSession, ConnectionState
from common.log import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], ConnectionSession]


class RetryPolicy(ABC):
    """Decides how long to wait before the next dial."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)"""
        ...


class FixedDelay(RetryPolicy):
    """Same delay after every failure, forever."""

    def __init__(self, delay: float = 5.0) -> None:
        self.delay = delay

    def next_delay(self, attempt: int) -> float:
        return self.delay


class ExponentialBackoff(RetryPolicy):
    """base * 2^(attempt-1), capped, with optional full jitter"""

    def __init__(self, base: float = 1.0, cap: float = 300.0, jitter: bool = True) -> None:
        self.base = base
        self.cap = cap
        self.jitter = jitter

    def next_delay(self, attempt: int) -> float:
        delay = min(self.cap, self.base * (2 ** max(attempt - 1, 0)))
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


def retry_policy_from_config(config: ClientConfig) -> RetryPolicy:
    if config.retry_policy == "exponential":
        return ExponentialBackoff(base=config.reconnect_delay, cap=config.max_reconnect_delay)
    return FixedDelay(config.reconnect_delay)


class LifecycleManager:
    """
    Keeps exactly one session alive at a time, forever.

    Each failed or closed session is logged and, after the retry policy's
    delay, replaced by a fresh one. ``run()`` returns only after ``stop()``.
    """

    def __init__(
        self,
        config: ClientConfig,
        dispatcher: Dispatcher,
        *,
        session_factory: Optional[SessionFactory] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher
        self.session_factory = session_factory or (lambda: ConnectionSession(config, dispatcher))
        self.retry_policy = retry_policy or retry_policy_from_config(config)
        self.attempts = 0
        self.session: Optional[ConnectionSession] = None
        self._session_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def run(self) -> None:
        while not self._stopping.is_set():
            self.session = self.session_factory()
            self._session_task = asyncio.create_task(self.session.connect_and_listen())
            error: Optional[BaseException] = None
            try:
                await self._session_task
            except asyncio.CancelledError:
                if not self._stopping.is_set():
                    raise
            except Exception as e:
                error = e
            finally:
                self._session_task = None
            if error is None:
                continue

            if self._reached_open():
                self.attempts = 0
            self.attempts += 1
            delay = self.retry_policy.next_delay(self.attempts)
            logger.warning("Reconnecting in %.1f seconds due to error: %s", delay, error,
                           extra={"client_id": self.config.client_id, "attempt": self.attempts})
            await self._wait(delay)
        logger.info("Lifecycle manager stopped")

    @property
    def state(self) -> ConnectionState:
        if self._session_task is None or self.session is None:
            return ConnectionState.IDLE
        return self.session.state

    def _reached_open(self) -> bool:
        return self.session is not None and self.session.transport is not None

    async def _wait(self, delay: float) -> None:
        """Sleep for the backoff delay, waking early on stop()."""
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), delay)

    def stop(self) -> None:
        self._stopping.set()
        if self.session is not None:
            self.session.abort()
        if self._session_task is not None:
            self._session_task.cancel()
