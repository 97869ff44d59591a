"""Answer validation.

Answers are checked either by exact comparison of canonicalized values or,
for open-ended tasks, by an LLM judge that decides semantic equivalence.
"""

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from jinja2 import Environment, StrictUndefined

from evalbox.config import JudgeConfig, JudgeSelector, ProviderConfig, RunConfig, Task, ToolConfig, ValidationRules
from evalbox.exceptions import JudgeEvaluationError, JudgeNotFoundError, JudgeVariantNotFoundError
from evalbox.execution import Executor
from evalbox.logging import get_logger
from evalbox.providers import Provider, Result, Usage
from evalbox.providers.factory import create_provider

log = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

JUDGE_TASK_NAME = "judge_evaluation"

# The judge answers with a single boolean verdict.
JUDGE_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "object",
    "properties": {
        "correct": {
            "type": "boolean",
            "description": "Whether the candidate response matches any expected answer.",
        },
    },
    "required": ["correct"],
    "additionalProperties": False,
}
JUDGE_EXPECTED_RESULT = {"correct": True}

JUDGE_PROMPT_TEMPLATE = """\
You are an automatic grader. Decide if the candidate response is semantically equivalent to ANY ONE of the expected answers.

Definitions
- Semantic equivalence: the candidate conveys the same meaning and required facts as an expected answer; wording may differ.
- Extra content: ignore unless it contradicts or changes the meaning.
- Normalization: apply the flags below BEFORE comparing (case/whitespace).

Inputs
Original task prompt:
{{ original_prompt }}

Original answer format instruction:
{{ response_format }}

Expected answer(s) (match any one):
{% for answer in expected_answers %}
- {{ answer }}
{% endfor %}

Candidate response:
{{ actual_response }}

Validation flags:
- Case sensitive: {{ "yes" if rules.is_case_sensitive() else "no" }}
- Ignore whitespace: {{ "yes" if rules.is_ignore_whitespace() else "no" }}

Procedure
1. Normalize candidate and each expected answer per the flags.
2. Compare the candidate to each expected answer independently for semantic equivalence.
3. If ANY match, the response is correct; else incorrect."""

_templates = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
)

JudgeProviderFactory = Callable[[ProviderConfig, Iterable[ToolConfig]], Provider]


@dataclass
class ValidationResult:
    """Outcome of comparing a response with the accepted answers."""

    is_correct: bool
    title: str
    explanation: str
    usage: Usage = field(default_factory=Usage)


class Validator(ABC):
    """Decides whether a response is one of the accepted answers."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def validate(
        self,
        rules: ValidationRules,
        expected_values: list[Any],
        result: Result,
        original_prompt: str,
        response_format: str | dict[str, Any],
    ) -> ValidationResult:
        pass

    @abstractmethod
    def to_canonical(self, rules: ValidationRules, value: Any) -> Any:
        """Return the form of a value that is shown and compared."""
        pass

    async def close(self) -> None:
        pass


class ValueMatchValidator(Validator):
    """Exact comparison of canonicalized values."""

    @property
    def name(self) -> str:
        return "value match"

    async def validate(
        self,
        rules: ValidationRules,
        expected_values: list[Any],
        result: Result,
        original_prompt: str = "",
        response_format: str | dict[str, Any] = "",
    ) -> ValidationResult:
        return self.is_correct(rules, expected_values, result)

    def is_correct(
        self, rules: ValidationRules, expected_values: list[Any], result: Result
    ) -> ValidationResult:
        actual = self.to_canonical(rules, result.final_answer)
        correct = any(self.to_canonical(rules, value) == actual for value in expected_values)
        if correct:
            explanation = "Response matches one of the accepted answers."
        else:
            explanation = "Response does not match any of the accepted answers."
        return ValidationResult(is_correct=correct, title="Response Assessment", explanation=explanation)

    def to_canonical(self, rules: ValidationRules, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            return self._canonical_string(rules, value)
        if isinstance(value, dict):
            return {str(k): self.to_canonical(rules, value[k]) for k in sorted(value, key=str)}
        if isinstance(value, (list, tuple)):
            return [self.to_canonical(rules, item) for item in value]
        if isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    def _canonical_string(self, rules: ValidationRules, value: str) -> str:
        canonical = value
        if rules.trim_lines and not rules.ignore_whitespace:
            canonical = "\n".join(line.strip() for line in canonical.splitlines())

        if rules.ignore_whitespace:
            canonical = _WHITESPACE_RE.sub("", canonical)
        else:
            canonical = canonical.strip()

        if not rules.case_sensitive:
            canonical = canonical.lower()
        return canonical


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


class JudgeValidator(Validator):
    """Asks a judge model whether the response means the same as an accepted answer.

    The judge call goes through an `Executor`, so the judge run's retry policy
    and request rate limit apply.
    """

    def __init__(self, provider: Provider, run_config: RunConfig):
        self.provider = provider
        self.run_config = run_config
        self._executor = Executor(provider, run_config)
        self._verdict = ValueMatchValidator()

    @property
    def name(self) -> str:
        return f"{self.provider.name} ({self.run_config.name}) judge"

    def render_prompt(
        self,
        rules: ValidationRules,
        expected_values: list[Any],
        actual_response: str,
        original_prompt: str,
        response_format: str | dict[str, Any],
    ) -> str:
        return _templates.from_string(JUDGE_PROMPT_TEMPLATE).render(
            rules=rules,
            expected_answers=[_as_text(value) for value in expected_values],
            actual_response=actual_response,
            original_prompt=original_prompt,
            response_format=_as_text(response_format),
        )

    async def validate(
        self,
        rules: ValidationRules,
        expected_values: list[Any],
        result: Result,
        original_prompt: str,
        response_format: str | dict[str, Any],
    ) -> ValidationResult:
        actual = result.final_answer_text()
        judge_task = Task(
            name=JUDGE_TASK_NAME,
            prompt=self.render_prompt(rules, expected_values, actual, original_prompt, response_format),
            response_result_format=JUDGE_RESPONSE_FORMAT,
            expected_result=JUDGE_EXPECTED_RESULT,
        )
        judge_result = Result()
        log.debug("Running judge", judge=self.name)
        try:
            await self._executor.execute(judge_task, judge_result)
        except Exception as e:
            raise JudgeEvaluationError(e) from e

        verdict = self._verdict.is_correct(ValidationRules(), judge_task.expected_values(), judge_result)
        if verdict.is_correct:
            explanation = (
                "Response is semantically equivalent to one of the accepted answers.\n\n"
                f"Judge reasoning:\n{judge_result.explanation}"
            )
        else:
            explanation = (
                "Response is not semantically equivalent to any of the accepted answers.\n\n"
                f"Actual response:\n{actual}\n\n"
                f"Judge reasoning:\n{judge_result.explanation}"
            )
        return ValidationResult(
            is_correct=verdict.is_correct,
            title="Semantic Assessment",
            explanation=explanation,
            usage=judge_result.usage,
        )

    def to_canonical(self, rules: ValidationRules, value: Any) -> Any:
        # Judges see the model output as written; only surrounding whitespace goes.
        if isinstance(value, str):
            return value.strip()
        return value

    async def close(self) -> None:
        await self.provider.close()


class ValidatorFactory:
    """Hands out validators by judge selection, creating each judge once."""

    def __init__(
        self,
        judges: Iterable[JudgeConfig] = (),
        provider_factory: JudgeProviderFactory = create_provider,
    ):
        self.judges = {judge.name: judge for judge in judges}
        self.provider_factory = provider_factory
        self._value_match = ValueMatchValidator()
        self._judge_validators: dict[tuple[str, str], JudgeValidator] = {}

    def _lookup(self, selector: JudgeSelector) -> tuple[JudgeConfig, RunConfig]:
        judge = self.judges.get(selector.name or "")
        if judge is None:
            raise JudgeNotFoundError(selector.name)
        run_config = judge.find_run(selector.variant or "")
        if run_config is None:
            raise JudgeVariantNotFoundError(selector.name, selector.variant)
        return judge, run_config

    def assert_exists(self, selector: JudgeSelector) -> None:
        """Raise when an enabled selector names an unknown judge or run variant."""
        if selector.is_enabled():
            self._lookup(selector)

    def get_validator(self, selector: JudgeSelector | None) -> Validator:
        if selector is None or not selector.is_enabled():
            return self._value_match

        judge, run_config = self._lookup(selector)
        key = (judge.name, run_config.name)
        validator = self._judge_validators.get(key)
        if validator is None:
            # Judges run without tools.
            provider = self.provider_factory(judge.provider, [])
            validator = JudgeValidator(provider, run_config)
            self._judge_validators[key] = validator
            log.info("Judge ready", judge=judge.name, variant=run_config.name)
        return validator

    async def close(self) -> None:
        for validator in self._judge_validators.values():
            try:
                await validator.close()
            except Exception as e:
                log.warning("Failed to close judge", judge=validator.name, error=str(e))
