import pytest

from evalbox.config import (
    Config,
    JudgeConfig,
    JudgeSelector,
    ProviderConfig,
    RetryPolicy,
    RunConfig,
    Task,
    ValidationRules,
)
from evalbox.exceptions import JudgeNotFoundError, JudgeVariantNotFoundError
from evalbox.providers import Provider, Result
from evalbox.providers.factory import create_provider
from evalbox.providers.mock import MockProvider
from evalbox.runner import ResultKind, Runner, RunResult


def _task(name: str, expected="4") -> Task:
    return Task(name=name, prompt="What is 2 + 2?", response_result_format="integer", expected_result=expected)


def _config(*providers: ProviderConfig, judges: list[JudgeConfig] | None = None) -> Config:
    return Config(providers=list(providers), judges=judges or [])


def _mock(retry_attempts: int = 0) -> ProviderConfig:
    return ProviderConfig(
        name="mock",
        retry_policy=RetryPolicy(max_retry_attempts=retry_attempts, initial_delay_seconds=0.001),
        runs=[RunConfig(name="offline", model="mock")],
    )


@pytest.mark.asyncio
async def test_results_are_classified():
    runner = Runner(_config(_mock()), [_task("sum"), _task("failure"), _task("error")])

    results = await runner.run()
    await runner.close()

    kinds = {item.task: item.kind for item in results["mock"]}
    assert kinds == {"sum": ResultKind.SUCCESS, "failure": ResultKind.FAILURE, "error": ResultKind.ERROR}
    assert runner.has_errors()


@pytest.mark.asyncio
async def test_successful_result_details():
    runner = Runner(_config(_mock()), [_task("sum", expected=["4", "Four"])])

    (item,) = (await runner.run())["mock"]

    assert item.got == "4"
    assert item.want == ["4", "four"]
    assert item.details == "sum\n\nmock success"
    assert item.usage.input_tokens == 42
    assert len(item.prompts) == 2
    assert not runner.has_errors()


@pytest.mark.asyncio
async def test_errors_keep_prompts_and_message():
    runner = Runner(_config(_mock()), [_task("error")])

    (item,) = (await runner.run())["mock"]

    assert item.kind is ResultKind.ERROR
    assert item.got == "failed to generate response: mock fatal error"
    assert item.prompts == ["What is 2 + 2?", "Provide the final answer in exactly this format: integer"]


@pytest.mark.asyncio
async def test_retry_policy_recovers_transient_errors():
    runner = Runner(_config(_mock(retry_attempts=2)), [_task("retry_2")])

    (item,) = (await runner.run())["mock"]

    assert item.kind is ResultKind.SUCCESS
    assert item.details.endswith("mock success after 3 attempts")


@pytest.mark.asyncio
async def test_retries_exhausted_is_an_error():
    runner = Runner(_config(_mock(retry_attempts=1)), [_task("retry_3")])

    (item,) = (await runner.run())["mock"]

    assert item.kind is ResultKind.ERROR
    assert "retryable error" in item.got


def test_disabled_providers_and_runs_are_skipped():
    disabled = ProviderConfig(name="mock", disabled=True, runs=[RunConfig(name="a", model="m")])
    enabled = ProviderConfig(
        name="openai",
        runs=[RunConfig(name="on", model="m"), RunConfig(name="off", model="m", disabled=True)],
    )
    created: list[str] = []

    def factory(provider_config, tools) -> Provider:
        created.append(provider_config.name)
        return create_provider(provider_config, tools)

    runner = Runner(_config(disabled, enabled), [], provider_factory=factory)

    assert created == ["openai"]
    assert [run.name for run in runner.targets[0][1]] == ["on"]


@pytest.mark.asyncio
async def test_unmarshal_failure_details_include_raw_response():
    class Rambling(Provider):
        @property
        def name(self) -> str:
            return "rambling"

        async def run(self, run_config, task, result: Result) -> Result:
            from evalbox.providers import decode_structured_response

            return decode_structured_response("no json here", result, stop_reason="stop")

    config = _config(ProviderConfig(name="openai", runs=[RunConfig(name="r", model="m")]))
    runner = Runner(config, [_task("sum")], provider_factory=lambda cfg, tools: Rambling())

    (item,) = (await runner.run())["rambling"]

    assert item.kind is ResultKind.ERROR
    assert "Raw response:\nno json here" in item.details
    assert "Stop reason: stop" in item.details


def test_result_id_is_sanitized():
    item = RunResult(kind=ResultKind.SUCCESS, task="sum two/numbers", provider="openai", run="gpt 4o")

    assert item.id == "result-openai-gpt-4o-sum-two_numbers"


@pytest.mark.asyncio
async def test_not_supported_is_its_own_kind():
    runner = Runner(_config(_mock()), [_task("not_supported")])

    (item,) = (await runner.run())["mock"]

    assert item.kind is ResultKind.NOT_SUPPORTED
    assert item.error_title == "Feature Not Supported"
    assert item.got == "feature not supported by provider: mock not supported"
    assert not runner.has_errors()


@pytest.mark.asyncio
async def test_error_titles_name_the_failing_stage():
    runner = Runner(_config(_mock()), [_task("error")])

    (item,) = (await runner.run())["mock"]

    assert item.error_title == "Execution Error"


def _judge(name: str = "semantic", variant: str = "grader") -> JudgeConfig:
    return JudgeConfig(
        name=name,
        provider=ProviderConfig(name="mock", runs=[RunConfig(name=variant, model="mock")]),
    )


def _judged(name: str, expected="4", judge: str = "semantic", variant: str = "grader") -> Task:
    task = _task(name, expected)
    task.validation_rules = ValidationRules(judge=JudgeSelector(enabled=True, name=judge, variant=variant))
    return task


@pytest.mark.asyncio
async def test_judge_grades_open_ended_answers():
    runner = Runner(_config(_mock(), judges=[_judge()]), [_judged("sum"), _judged("failure")])

    results = await runner.run()
    await runner.close()

    passed, failed = results["mock"]
    assert passed.kind is ResultKind.SUCCESS
    assert passed.validation_title == "Semantic Assessment"
    assert passed.validation_explanation == (
        "Response is semantically equivalent to one of the accepted answers.\n\nJudge reasoning:\nmock success"
    )
    assert passed.validation_usage.input_tokens == 42
    assert failed.kind is ResultKind.FAILURE
    assert failed.validation_explanation.startswith(
        "Response is not semantically equivalent to any of the accepted answers.\n\nActual response:\n"
    )


@pytest.mark.asyncio
async def test_judge_failure_is_a_validation_error():
    runner = Runner(_config(_mock(), judges=[_judge()]), [_judged("sum", expected="error")])

    (item,) = (await runner.run())["mock"]

    assert item.kind is ResultKind.ERROR
    assert item.error_title == "Validation Error"
    assert item.got == "judge evaluation failed: failed to generate response: mock fatal error"


def test_unknown_judge_is_rejected_before_running():
    with pytest.raises(JudgeNotFoundError) as excinfo:
        Runner(_config(_mock(), judges=[_judge()]), [_judged("sum", judge="missing")])

    assert str(excinfo.value) == "judge not found: missing"


def test_unknown_judge_variant_is_rejected_before_running():
    with pytest.raises(JudgeVariantNotFoundError) as excinfo:
        Runner(_config(_mock(), judges=[_judge()]), [_judged("sum", variant="strict")])

    assert str(excinfo.value) == "judge run variant not found: strict for judge semantic"


@pytest.mark.asyncio
async def test_close_releases_judge_providers():
    closed: list[str] = []

    class ClosingMock(MockProvider):
        async def close(self) -> None:
            closed.append(self.name)

    runner = Runner(
        _config(_mock(), judges=[_judge()]),
        [_judged("sum")],
        provider_factory=lambda cfg, tools: ClosingMock(cfg),
    )
    await runner.run()

    await runner.close()

    assert closed == ["mock", "mock"]
