"""Run tasks through a provider with rate limiting and retries."""

import asyncio

import structlog

from evalbox.config import RunConfig, Task
from evalbox.exceptions import is_retryable
from evalbox.execution.rate_limit import RateLimiter, backoff_with_callback, exponential_backoff
from evalbox.logging import get_logger
from evalbox.providers import Provider, Result

log = get_logger(__name__)


class Executor:
    """Binds a provider to one run configuration.

    A rate limiter is created only when the run sets a positive
    `max_requests_per_minute`; it is shared by every call to `execute`.
    """

    def __init__(self, provider: Provider, run_config: RunConfig):
        self.provider = provider
        self.run_config = run_config
        self.limiter: RateLimiter | None = None
        if run_config.max_requests_per_minute > 0:
            self.limiter = RateLimiter(run_config.max_requests_per_minute)

    async def execute(self, task: Task, result: Result | None = None) -> Result:
        """Run the task, retrying transient failures per the retry policy.

        The same `result` is reset before every attempt, so after return or
        raise it holds what the last attempt recorded. The last attempt's
        error is raised as is.
        """
        if result is None:
            result = Result()

        with structlog.contextvars.bound_contextvars(
            provider=self.provider.name, run=self.run_config.name, task=task.name
        ):
            policy = self.run_config.retry_policy
            if policy is None or policy.max_retry_attempts == 0:
                return await self._execute_once(task, result, attempt=1)

            max_retries = policy.max_retry_attempts

            def on_backoff(retry_number: int, delay: float) -> None:
                log.info(f"Retrying task {retry_number}/{max_retries} in {delay:g}s")

            delays = backoff_with_callback(
                on_backoff,
                exponential_backoff(
                    policy.initial_delay_seconds,
                    max_retries,
                    max_delay=policy.max_delay_seconds,
                    jitter=policy.jitter,
                ),
            )

            attempt = 1
            while True:
                try:
                    return await self._execute_once(task, result, attempt=attempt)
                except Exception as e:
                    if not is_retryable(e):
                        raise
                    delay = next(delays, None)
                    if delay is None:
                        log.warning("Retry attempts exhausted", attempts=attempt)
                        raise
                await asyncio.sleep(delay)
                attempt += 1

    async def _execute_once(self, task: Task, result: Result, attempt: int) -> Result:
        result.reset()
        with structlog.contextvars.bound_contextvars(attempt=attempt):
            if self.limiter is not None:
                await self.limiter.acquire()
            try:
                return await self.provider.run(self.run_config, task, result)
            except Exception as e:
                if is_retryable(e):
                    log.warning("Task encountered a transient error", error=str(e))
                raise
