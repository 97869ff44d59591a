"""Deterministic offline provider.

The task name drives the outcome:

- `retry_N` or `retry_N: <outcome>` fails N times with a retryable error, then
  resolves `<outcome>`, but only when the run has a retry policy that allows
  retries; otherwise the count is ignored;
- `error` fails with a non-retryable error;
- `not_supported` fails with a feature-not-supported error;
- `failure` answers with a wrong value;
- anything else answers with the first expected value.

A task named `judge_evaluation` is a grading request: the candidate response
and the accepted answers are read back from the prompt, the candidate goes
through the same outcome rules, and the verdict is `{"correct": <bool>}`.

Every attempt records its prompt and token usage before deciding, so callers
can observe what a failed attempt gathered.
"""

import re
import threading

from evalbox.config import ProviderConfig, RunConfig, Task
from evalbox.exceptions import FeatureNotSupportedError, GenerateResponseError, RetryableError
from evalbox.logging import get_logger
from evalbox.providers import Provider, Result, default_answer_format_instruction

log = get_logger(__name__)

_RETRY_RE = re.compile(r"^retry_(\d+)(?:: (.+))?$")
_EXPECTED_RE = re.compile(r"Expected answer\(s\).*?:\n((?:- .+\n?)+)")
_ANSWER_RE = re.compile(r"^- (.+)$", re.MULTILINE)
_CANDIDATE_RE = re.compile(r"Candidate response:\n(.+?)\n\nValidation flags:", re.DOTALL)

JUDGE_TASK_NAME = "judge_evaluation"
MOCK_INPUT_TOKENS = 42
MOCK_OUTPUT_TOKENS = 7
WRONG_ANSWER = "Facere aperiam recusandae totam magnam nulla corrupti."


class MockProvider(Provider):
    """Provider that never leaves the process."""

    def __init__(self, config: ProviderConfig | None = None):
        self._name = config.name if config is not None else "mock"
        self._lock = threading.Lock()
        self._attempts: dict[str, int] = {}

    @property
    def name(self) -> str:
        return self._name

    def _next_attempt(self, key: str) -> int:
        """Return the zero-based attempt number for the key."""
        with self._lock:
            current = self._attempts.get(key, 0)
            self._attempts[key] = current + 1
            return current

    def attempts(self, run_config: RunConfig, task: Task) -> int:
        with self._lock:
            return self._attempts.get(f"{run_config.name}-{task.name}", 0)

    async def run(self, run_config: RunConfig, task: Task, result: Result) -> Result:
        log.debug("Executing mock run", task=task.name, run=run_config.name)
        result.record_prompt(task.prompt)
        result.record_prompt(default_answer_format_instruction(task))
        result.record_usage(MOCK_INPUT_TOKENS, MOCK_OUTPUT_TOKENS)
        result.title = task.name

        if task.name == JUDGE_TASK_NAME:
            expected = _expected_answers(task.prompt)
            candidate = _candidate_response(task.prompt)
            outcome, attempts = self._resolve(run_config, task, candidate)
            result.explanation = _success_explanation(attempts)
            result.final_answer = {"correct": any(outcome.strip() == answer for answer in expected)}
            return result

        outcome, attempts = self._resolve(run_config, task, task.name)
        if outcome == "failure":
            result.explanation = "mock failure"
            result.final_answer = WRONG_ANSWER
        else:
            result.explanation = _success_explanation(attempts)
            result.final_answer = task.expected_values()[0]
        return result

    def _resolve(self, run_config: RunConfig, task: Task, expression: str) -> tuple[str, int]:
        """Apply retry and failure rules to an expression.

        Returns the outcome and the number of attempts made so far, zero when
        no retries were simulated.
        """
        outcome = expression
        attempts = 0
        match = _RETRY_RE.match(expression)
        if match:
            expected_failures = int(match.group(1))
            outcome = match.group(2) or "success"
            policy = run_config.retry_policy
            if expected_failures > 0 and policy is not None and policy.max_retry_attempts > 0:
                attempt = self._next_attempt(f"{run_config.name}-{task.name}")
                if attempt < expected_failures:
                    cause = RetryableError(RuntimeError(f"mock transient error (retry {attempt})"))
                    raise GenerateResponseError(cause) from cause
                attempts = attempt + 1

        if outcome == "error":
            cause = RuntimeError("mock fatal error")
            raise GenerateResponseError(cause) from cause
        if outcome == "not_supported":
            raise FeatureNotSupportedError("mock not supported")
        return outcome, attempts


def _success_explanation(attempts: int) -> str:
    return f"mock success after {attempts} attempts" if attempts else "mock success"


def _expected_answers(prompt: str) -> list[str]:
    match = _EXPECTED_RE.search(prompt)
    if match is None:
        raise ValueError("judge prompt has no expected answers")
    return [answer.strip() for answer in _ANSWER_RE.findall(match.group(1))]


def _candidate_response(prompt: str) -> str:
    match = _CANDIDATE_RE.search(prompt)
    if match is None:
        raise ValueError("judge prompt has no candidate response")
    return match.group(1).strip()
