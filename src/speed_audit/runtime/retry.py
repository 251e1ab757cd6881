# runtime/retry.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryState:
    attempt: int  # 1-based attempt about to run
    backoff_s: float  # wait before this attempt


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.
    Attempt 1 runs immediately; attempt k>1 waits
    min(max_backoff_s, initial_backoff_s * multiplier**(k-2)) + U(0, jitter_s).
    """

    max_attempts: int = 3
    initial_backoff_s: float = 2.0
    multiplier: float = 2.0
    max_backoff_s: float = 30.0
    jitter_s: float = 0.0
    rng: np.random.Generator | None = field(default=None, compare=False, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, compare=False, repr=False
    )

    @classmethod
    def none(cls) -> RetryPolicy:
        return cls(max_attempts=1, initial_backoff_s=0.0)

    def first(self) -> RetryState:
        return RetryState(attempt=1, backoff_s=0.0)

    def next(self, state: RetryState) -> RetryState | None:
        if state.attempt >= self.max_attempts:
            return None
        base = self.initial_backoff_s * self.multiplier ** (state.attempt - 1)
        wait = min(self.max_backoff_s, base)
        if self.jitter_s > 0:
            rng = self.rng if self.rng is not None else np.random.default_rng()
            wait += float(rng.uniform(0.0, self.jitter_s))
        return RetryState(attempt=state.attempt + 1, backoff_s=wait)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...],
        on_retry: Callable[[RetryState, BaseException], None] | None = None,
    ) -> T:
        """Call fn until it succeeds, raises something not in retry_on, or attempts run out.

        On exhaustion the last exception propagates unchanged.
        """
        state = self.first()
        while True:
            if state.backoff_s > 0:
                await self.sleep(state.backoff_s)
            try:
                return await fn()
            except retry_on as exc:
                nxt = self.next(state)
                if nxt is None:
                    raise
                logger.info(
                    "retrying after failure",
                    extra={
                        "extra": {
                            "attempt": nxt.attempt,
                            "max_attempts": self.max_attempts,
                            "backoff_s": nxt.backoff_s,
                            "error": str(exc),
                        }
                    },
                )
                if on_retry is not None:
                    on_retry(nxt, exc)
                state = nxt
