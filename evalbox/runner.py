"""Run every enabled task against every enabled provider run."""

import asyncio
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from evalbox.config import Config, ProviderConfig, RunConfig, Task, ToolConfig, ValidationRules
from evalbox.exceptions import FeatureNotSupportedError, UnmarshalResponseError, find_cause
from evalbox.execution import Executor
from evalbox.logging import get_logger
from evalbox.providers import Provider, Result, Usage
from evalbox.providers.factory import create_provider
from evalbox.tools.usage import ToolUsage
from evalbox.validators import Validator, ValidatorFactory

log = get_logger(__name__)

ProviderFactory = Callable[[ProviderConfig, Iterable[ToolConfig]], Provider]

_INVALID_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class ResultKind(str, Enum):
    SUCCESS = "success"  # correct answer
    FAILURE = "failure"  # answered, but wrong
    ERROR = "error"  # no answer
    NOT_SUPPORTED = "not_supported"  # provider lacks a feature the task needs


@dataclass
class RunResult:
    """Outcome of one task on one provider run."""

    kind: ResultKind
    task: str
    provider: str
    run: str
    got: Any = None
    want: list[Any] = field(default_factory=list)
    details: str = ""
    duration: float = 0.0
    prompts: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    tool_usage: dict[str, ToolUsage] = field(default_factory=dict)
    error_title: str = ""
    validation_title: str = ""
    validation_explanation: str = ""
    validation_usage: Usage = field(default_factory=Usage)

    @property
    def id(self) -> str:
        raw = f"result-{self.provider}-{self.run}-{self.task}".replace(" ", "-")
        return _INVALID_ID_CHARS.sub("_", raw)


class Runner:
    """Runs tasks on all providers concurrently; runs and tasks of one provider run in order."""

    def __init__(
        self,
        config: Config,
        tasks: list[Task],
        provider_factory: ProviderFactory = create_provider,
        validators: ValidatorFactory | None = None,
    ):
        self.tasks = list(tasks)
        self.validators = validators or ValidatorFactory(config.judges_with_enabled_runs(), provider_factory)
        for task in self.tasks:
            self.validators.assert_exists(task.resolved_validation_rules().judge_selector())
        self.targets: list[tuple[Provider, list[RunConfig]]] = []
        for provider_config in config.providers_with_enabled_runs():
            provider = provider_factory(provider_config, config.tools)
            self.targets.append((provider, provider_config.runs))
        self.results: dict[str, list[RunResult]] = {}

    async def run(self) -> dict[str, list[RunResult]]:
        log.info("Starting tasks", tasks=len(self.tasks), providers=len(self.targets))
        started = time.perf_counter()
        await asyncio.gather(*(self._run_provider(provider, runs) for provider, runs in self.targets))
        log.info("All tasks finished", elapsed_seconds=round(time.perf_counter() - started, 3))
        return self.results

    async def _run_provider(self, provider: Provider, runs: list[RunConfig]) -> None:
        for run_config in runs:
            executor = Executor(provider, run_config)
            for task in self.tasks:
                run_result = await self.run_task(executor, task)
                self.results.setdefault(provider.name, []).append(run_result)

    async def run_task(self, executor: Executor, task: Task) -> RunResult:
        """Execute one task and classify the outcome."""
        rules = task.resolved_validation_rules()
        validator = self.validators.get_validator(rules.judge_selector())
        run_result = RunResult(
            kind=ResultKind.ERROR,
            task=task.name,
            provider=executor.provider.name,
            run=executor.run_config.name,
            want=[validator.to_canonical(rules, value) for value in task.expected_values()],
        )
        result = Result()
        log.info("Starting task", provider=run_result.provider, run=run_result.run, task=task.name)
        try:
            await executor.execute(task, result)
        except Exception as e:
            run_result.got = str(e)
            run_result.details = str(e)
            unmarshal_error = find_cause(e, UnmarshalResponseError)
            if find_cause(e, FeatureNotSupportedError) is not None:
                run_result.kind = ResultKind.NOT_SUPPORTED
                run_result.error_title = "Feature Not Supported"
            elif unmarshal_error is not None:
                run_result.error_title = "Response Parsing Error"
                run_result.details = unmarshal_error.details()
            else:
                run_result.error_title = "Execution Error"
            log.warning("Task failed", task=task.name, error=str(e))
        else:
            await self._validate(validator, rules, task, result, run_result)

        run_result.duration = result.duration
        run_result.prompts = list(result.prompts)
        run_result.usage = result.usage
        run_result.tool_usage = dict(result.tool_usage)
        log.info("Task finished", task=task.name, kind=run_result.kind.value)
        return run_result

    async def _validate(
        self,
        validator: Validator,
        rules: ValidationRules,
        task: Task,
        result: Result,
        run_result: RunResult,
    ) -> None:
        try:
            validation = await validator.validate(
                rules, task.expected_values(), result, task.prompt, task.response_result_format
            )
        except Exception as e:
            run_result.kind = ResultKind.ERROR
            run_result.error_title = "Validation Error"
            run_result.got = str(e)
            run_result.details = str(e)
            log.warning("Validation failed", task=task.name, validator=validator.name, error=str(e))
            return

        run_result.kind = ResultKind.SUCCESS if validation.is_correct else ResultKind.FAILURE
        run_result.got = validator.to_canonical(rules, result.final_answer)
        run_result.details = result.explain()
        run_result.validation_title = validation.title
        run_result.validation_explanation = validation.explanation
        run_result.validation_usage = validation.usage

    def all_results(self) -> list[RunResult]:
        return [item for results in self.results.values() for item in results]

    def has_errors(self) -> bool:
        return any(item.kind is ResultKind.ERROR for item in self.all_results())

    async def close(self) -> None:
        for provider, _ in self.targets:
            try:
                await provider.close()
            except Exception as e:
                log.warning("Failed to close provider", provider=provider.name, error=str(e))
        await self.validators.close()
