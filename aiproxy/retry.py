"""Bounded retry with exponential backoff over tagged step results."""

import asyncio
import random
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class Outcome(Enum):
    OK = "ok"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepResult:
    outcome: Outcome
    value: Any = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK

    @classmethod
    def success(cls, value) -> "StepResult":
        return cls(Outcome.OK, value=value)

    @classmethod
    def transient(cls, error: str) -> "StepResult":
        return cls(Outcome.TRANSIENT, error=error)

    @classmethod
    def fatal(cls, error: str) -> "StepResult":
        return cls(Outcome.FATAL, error=error)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Exponential backoff delay for the 0-based ``attempt``.

        Base delay doubles each attempt, capped at ``max_delay``, then
        multiplied by a random jitter factor between 0.8 and 1.2.
        """
        capped = min(self.base_delay * (2 ** attempt), self.max_delay)
        if not self.jitter:
            return capped
        return capped * random.uniform(0.8, 1.2)


async def run_with_retry(
    step: Callable[[], Awaitable[StepResult]],
    policy: RetryPolicy,
    label: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> StepResult:
    """Run ``step`` until it succeeds, fails fatally, or attempts run out.

    Never raises for step failures; running out of attempts returns the
    last TRANSIENT result.
    """
    attempts = max(policy.attempts, 1)
    result = StepResult.transient("not attempted")
    for attempt in range(attempts):
        result = await step()
        if result.outcome is not Outcome.TRANSIENT:
            return result
        if attempt < attempts - 1:
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt + 1, attempts, result.error, delay,
            )
            await sleep(delay)
        else:
            logger.error("%s failed after %d attempts: %s", label, attempts, result.error)
    return result
