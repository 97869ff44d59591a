"""Task execution with rate limiting and retries."""

from evalbox.execution.executor import Executor
from evalbox.execution.rate_limit import RateLimiter, backoff_with_callback, exponential_backoff

__all__ = ["Executor", "RateLimiter", "backoff_with_callback", "exponential_backoff"]
