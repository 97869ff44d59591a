import csv
import io
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from evalbox.formatters import (
    FORMATTERS,
    CSVFormatter,
    HTMLFormatter,
    JSONFormatter,
    LogFormatter,
    SummaryLogFormatter,
    format_answer_text,
    format_duration,
    summarize,
    to_status,
    write_reports,
)
from evalbox.runner import ResultKind, RunResult
from evalbox.tools.usage import ToolUsage


def _result(kind: ResultKind, task: str, run: str = "fast", provider: str = "openai", **fields) -> RunResult:
    return RunResult(kind=kind, task=task, provider=provider, run=run, **fields)


@pytest.fixture
def results() -> dict[str, list[RunResult]]:
    return {
        "openai": [
            _result(ResultKind.SUCCESS, "sum", got="4", want=["4"], duration=1.23456, details="Sum\n\nadded"),
            _result(ResultKind.FAILURE, "capital", got="Lyon", want=["paris", "city of paris"], duration=0.5),
            _result(ResultKind.ERROR, "broken", got="boom", duration=0.25),
            _result(ResultKind.NOT_SUPPORTED, "image", got="no vision"),
        ],
        "mock": [_result(ResultKind.SUCCESS, "sum", run="offline", provider="mock", got="4", want=["4"])],
    }


def _render(formatter, results) -> str:
    out = io.StringIO()
    formatter.write(results, out)
    return out.getvalue()


def test_status_names():
    assert [to_status(kind) for kind in ResultKind] == ["Passed", "Failed", "Error", "Skipped"]


def test_duration_is_rounded_to_milliseconds():
    assert format_duration(1.23456) == "1.235s"
    assert format_duration(0) == "0s"


def test_failed_answer_is_a_diff_per_accepted_answer(results):
    text = format_answer_text(results["openai"][1])

    assert text.startswith("[\n    --- expected\n")
    assert "    -paris\n" in text
    assert "    +Lyon" in text
    assert "\n  ,\n" in text


def test_summary_counts_and_rates(results):
    mock, openai = summarize(results)

    assert (mock.provider, mock.run, mock.passed) == ("mock", "offline", 1)
    assert (openai.passed, openai.failed, openai.errors, openai.skipped) == (1, 1, 1, 1)
    assert openai.pass_rate == pytest.approx(1 / 3)
    assert openai.accuracy == pytest.approx(0.5)
    assert openai.error_rate == pytest.approx(1 / 3)
    assert openai.duration == pytest.approx(1.98456)


def test_csv_rows_follow_provider_order(results):
    rows = list(csv.reader(io.StringIO(_render(CSVFormatter(), results))))

    assert rows[0] == ["Provider", "Run", "Task", "Status", "Duration", "Answer", "Details"]
    assert rows[1] == ["mock", "offline", "sum", "Passed", "0s", "4", ""]
    assert rows[2] == ["openai", "fast", "sum", "Passed", "1.235s", "4", "Sum\n\nadded"]
    assert [row[3] for row in rows[3:]] == ["Failed", "Error", "Skipped"]


def test_html_escapes_model_output(results):
    results["openai"][2].got = "<script>alert(1)</script>"
    results["openai"][2].error_title = "Execution Error"
    results["openai"][0].tool_usage = {"python": ToolUsage(call_count=2)}
    formatter = HTMLFormatter(clock=lambda: datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC))

    page = _render(formatter, results)

    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in page
    assert "<script>" not in page
    assert "2025-01-02 03:04:05 UTC" in page
    assert '<td class="skipped">Skipped</td>' in page
    assert "<h4>Execution Error</h4>" in page
    assert "<li>python: 2 call(s)</li>" in page
    assert "<td>33.33</td><td>50.00</td><td>33.33</td>" in page


def test_json_includes_result_ids(results):
    entries = json.loads(_render(JSONFormatter(), results))

    assert [entry["id"] for entry in entries][:2] == ["result-mock-offline-sum", "result-openai-fast-sum"]
    assert entries[4]["kind"] == "not_supported"


def test_text_logs(results):
    lines = _render(LogFormatter(), results).splitlines()
    summary = _render(SummaryLogFormatter(), results)

    assert "result-openai-fast-broken" in next(line for line in lines if "broken" in line)
    assert "Pass Rate (%)" in summary
    assert "33.33" in summary
    assert "1.985s" in summary


def test_write_reports_to_files(tmp_path: Path, results):
    paths = write_reports(results, [CSVFormatter(), SummaryLogFormatter()], tmp_path / "out", "run-1", io.StringIO())

    assert [path.name for path in paths] == ["run-1.csv", "run-1.summary.log"]
    assert all(path.exists() for path in paths)


def test_write_reports_to_stream_when_basename_blank(tmp_path: Path, results):
    out = io.StringIO()

    paths = write_reports(results, [CSVFormatter()], tmp_path / "out", "  ", out)

    assert paths == []
    assert out.getvalue().startswith("Provider,Run,Task")
    assert not (tmp_path / "out").exists()


def test_formatters_by_extension():
    assert set(FORMATTERS) == {"html", "csv", "json", "log", "summary.log"}
