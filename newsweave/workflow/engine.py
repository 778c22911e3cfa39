"""Checkpointed step execution.

`StepRunner.do` is the only way workflow code performs a step:

1. a `done` checkpoint short-circuits and returns the stored result;
2. otherwise the step is marked `pending` and run under its policy
   (attempt limit, exponential backoff, per-attempt timeout);
3. the result is stored as `done` before control returns, so the next
   step never starts ahead of its predecessor's checkpoint.

Results must be JSON values; they are round-tripped through JSON before
being stored so replays see exactly what a fresh run saw.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_not_exception_type

from newsweave.core.errors import StepFailedError, TERMINAL_ERRORS
from newsweave.core.logging import get_logger
from newsweave.workflow.checkpoints import CheckpointStore, DONE, FAILED, PENDING

logger = get_logger(__name__)


@dataclass(frozen=True)
class StepPolicy:
    """Retry/timeout policy of one step."""
    retries: int
    delay: float
    timeout: float
    backoff: str = "exponential"

    @property
    def max_attempts(self) -> int:
        return self.retries + 1


def to_json_value(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class StepRunner:
    """Runs the steps of one workflow instance against a checkpoint store."""

    def __init__(
        self,
        instance_id: str,
        store: CheckpointStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.instance_id = instance_id
        self.store = store
        self.sleep = sleep
        self.executed = []  # steps whose body actually ran in this invocation

    def _wait(self, policy: StepPolicy):
        if policy.backoff == "exponential":
            return wait_exponential(multiplier=policy.delay, exp_base=2)
        return wait_exponential(multiplier=policy.delay, exp_base=1)

    async def do(self, name: str, policy: StepPolicy, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run `fn` as step `name` unless it already completed.

        Raises:
            NotFoundError / ContentValidationError: terminal, not retried
            StepFailedError: retries exhausted
        """
        existing = await self.store.get(self.instance_id, name)
        if existing is not None and existing.status == DONE:
            logger.debug(f"[{self.instance_id}] {name}: replaying checkpoint")
            return existing.result

        prior_attempts = existing.attempts if existing else 0
        await self.store.save(self.instance_id, name, PENDING, attempts=prior_attempts)
        self.executed.append(name)

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.max_attempts),
                wait=self._wait(policy),
                retry=retry_if_not_exception_type(TERMINAL_ERRORS),
                sleep=self.sleep,
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    if attempts > 1:
                        logger.info(f"[{self.instance_id}] {name}: attempt {attempts}/{policy.max_attempts}")
                    result = await asyncio.wait_for(fn(), timeout=policy.timeout)
        except TERMINAL_ERRORS as e:
            await self.store.save(self.instance_id, name, FAILED, attempts=prior_attempts + attempts, error=str(e))
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            await self.store.save(self.instance_id, name, FAILED, attempts=prior_attempts + attempts, error=error)
            logger.error(f"[{self.instance_id}] {name} failed after {attempts} attempts: {error}")
            raise StepFailedError(name, attempts, e) from e

        result = to_json_value(result)
        await self.store.save(self.instance_id, name, DONE, result=result, attempts=prior_attempts + attempts)
        return result
