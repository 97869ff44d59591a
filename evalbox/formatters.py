"""Result reports.

Each formatter renders the results of a whole run, grouped by provider, into
one output format. Providers, and the runs within a provider, are reported
in name order; results keep the order in which they were produced.
"""

import csv
import dataclasses
import difflib
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TextIO

from jinja2 import Environment, StrictUndefined
from rich import box
from rich.console import Console
from rich.table import Table

from evalbox import __version__
from evalbox.logging import get_logger
from evalbox.runner import ResultKind, RunResult

log = get_logger(__name__)

Results = dict[str, list[RunResult]]

PASSED = "Passed"
FAILED = "Failed"
ERROR = "Error"
SKIPPED = "Skipped"

_STATUS = {
    ResultKind.SUCCESS: PASSED,
    ResultKind.FAILURE: FAILED,
    ResultKind.ERROR: ERROR,
    ResultKind.NOT_SUPPORTED: SKIPPED,
}


def to_status(kind: ResultKind) -> str:
    return _STATUS.get(kind, f"Unknown ({kind})")


def format_duration(seconds: float) -> str:
    """Round to whole milliseconds, e.g. `1.235s`."""
    return f"{round(seconds, 3):g}s"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def diff_text(expected: Any, actual: Any) -> str:
    """Line diff from an accepted answer to the actual one."""
    lines = difflib.unified_diff(
        _as_text(expected).splitlines(),
        _as_text(actual).splitlines(),
        fromfile="expected",
        tofile="actual",
        lineterm="",
    )
    return "\n".join(lines)


def format_answer(result: RunResult) -> list[str]:
    """Answer shown for a result: one diff per accepted answer when it failed."""
    if result.kind is ResultKind.FAILURE:
        return [diff_text(expected, result.got) for expected in result.want]
    return [_as_text(result.got)]


def format_answer_text(result: RunResult) -> str:
    answers = format_answer(result)
    if len(answers) == 1:
        return answers[0]
    indented = ["\n".join(f"    {line}" for line in answer.splitlines()) for answer in answers]
    return "[\n" + "\n  ,\n".join(indented) + "\n]"


@dataclass
class RunSummary:
    """Outcome counts of one provider run."""

    provider: str
    run: str
    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    duration: float = 0.0

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.errors + self.skipped

    @property
    def attempted(self) -> int:
        return self.total - self.skipped

    @property
    def pass_rate(self) -> float:
        """Share of attempted tasks answered correctly."""
        return _ratio(self.passed, self.attempted)

    @property
    def accuracy(self) -> float:
        """Share of answered tasks answered correctly."""
        return _ratio(self.passed, self.passed + self.failed)

    @property
    def error_rate(self) -> float:
        return _ratio(self.errors, self.attempted)


def _ratio(part: int, whole: int) -> float:
    return part / whole if whole else 0.0


def percent(ratio: float) -> str:
    return f"{ratio * 100:.2f}"


def ordered(results: Results) -> Iterable[tuple[str, list[RunResult]]]:
    for provider in sorted(results):
        yield provider, results[provider]


def summarize(results: Results) -> list[RunSummary]:
    """Count outcomes per provider run."""
    summaries: list[RunSummary] = []
    for provider, items in ordered(results):
        by_run: dict[str, RunSummary] = {}
        for item in items:
            summary = by_run.setdefault(item.run, RunSummary(provider=provider, run=item.run))
            summary.duration += item.duration
            if item.kind is ResultKind.SUCCESS:
                summary.passed += 1
            elif item.kind is ResultKind.FAILURE:
                summary.failed += 1
            elif item.kind is ResultKind.NOT_SUPPORTED:
                summary.skipped += 1
            else:
                summary.errors += 1
        summaries.extend(by_run[run] for run in sorted(by_run))
    return summaries


class Formatter(ABC):
    """Writes results in one output format."""

    file_ext: str

    @abstractmethod
    def write(self, results: Results, out: TextIO) -> None:
        pass


class CSVFormatter(Formatter):
    file_ext = "csv"

    def write(self, results: Results, out: TextIO) -> None:
        writer = csv.writer(out)
        writer.writerow(["Provider", "Run", "Task", "Status", "Duration", "Answer", "Details"])
        for _, items in ordered(results):
            for item in items:
                writer.writerow(
                    [
                        item.provider,
                        item.run,
                        item.task,
                        to_status(item.kind),
                        format_duration(item.duration),
                        format_answer_text(item),
                        item.details,
                    ]
                )


class JSONFormatter(Formatter):
    """Every field of every result, for further processing."""

    file_ext = "json"

    def write(self, results: Results, out: TextIO) -> None:
        payload = [
            dict(dataclasses.asdict(item), id=item.id)
            for _, items in ordered(results)
            for item in items
        ]
        json.dump(payload, out, indent=2, default=str)
        out.write("\n")


def _text_table(*columns: str) -> Table:
    table = Table(box=box.ASCII, show_edge=False, pad_edge=False, header_style=None)
    for column in columns:
        table.add_column(column, overflow="fold")
    return table


def _print_plain(table: Table, out: TextIO) -> None:
    console = Console(file=out, width=240, color_system=None, highlight=False, emoji=False)
    console.print(table)


class LogFormatter(Formatter):
    """One line per result."""

    file_ext = "log"

    def write(self, results: Results, out: TextIO) -> None:
        table = _text_table("ID", "Provider", "Run", "Task", "Status", "Duration", "Answer")
        for _, items in ordered(results):
            for item in items:
                table.add_row(
                    item.id,
                    item.provider,
                    item.run,
                    item.task,
                    to_status(item.kind),
                    format_duration(item.duration),
                    format_answer_text(item),
                )
        _print_plain(table, out)


class SummaryLogFormatter(Formatter):
    """One line per provider run with outcome counts and rates."""

    file_ext = "summary.log"

    def write(self, results: Results, out: TextIO) -> None:
        table = _text_table(
            "Provider",
            "Run",
            PASSED,
            FAILED,
            ERROR,
            SKIPPED,
            "Pass Rate (%)",
            "Accuracy (%)",
            "Error Rate (%)",
            "Total Duration",
        )
        for summary in summarize(results):
            table.add_row(
                summary.provider,
                summary.run,
                str(summary.passed),
                str(summary.failed),
                str(summary.errors),
                str(summary.skipped),
                percent(summary.pass_rate),
                percent(summary.accuracy),
                percent(summary.error_rate),
                format_duration(summary.duration),
            )
        _print_plain(table, out)


HTML_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>evalbox results</title>
<style>
body { font-family: sans-serif; margin: 2em; }
table { border-collapse: collapse; margin-bottom: 2em; }
th, td { border: 1px solid #ccc; padding: 4px 8px; text-align: left; vertical-align: top; }
pre { margin: 0; white-space: pre-wrap; }
.passed { color: #1a7f37; }
.failed { color: #9a6700; }
.error { color: #cf222e; }
.skipped { color: #6e7781; }
</style>
</head>
<body>
<h1>Results</h1>
<p>Generated by evalbox {{ version }} at {{ generated_at }}.</p>
<h2>Summary</h2>
<table>
<tr><th>Provider</th><th>Run</th><th>Passed</th><th>Failed</th><th>Error</th><th>Skipped</th><th>Pass Rate (%)</th><th>Accuracy (%)</th><th>Error Rate (%)</th><th>Total Duration</th></tr>
{% for summary in summaries %}
<tr><td>{{ summary.provider }}</td><td>{{ summary.run }}</td><td>{{ summary.passed }}</td><td>{{ summary.failed }}</td><td>{{ summary.errors }}</td><td>{{ summary.skipped }}</td><td>{{ percent(summary.pass_rate) }}</td><td>{{ percent(summary.accuracy) }}</td><td>{{ percent(summary.error_rate) }}</td><td>{{ format_duration(summary.duration) }}</td></tr>
{% endfor %}
</table>
{% for provider, items in providers %}
<h2>{{ provider }}</h2>
<table>
<tr><th>Run</th><th>Task</th><th>Status</th><th>Duration</th><th>Tokens in/out</th><th>Answer</th><th>Details</th></tr>
{% for item in items %}
{% set status = to_status(item.kind) %}
<tr id="{{ item.id }}">
<td>{{ item.run }}</td>
<td>{{ item.task }}</td>
<td class="{{ status | lower }}">{{ status }}</td>
<td>{{ format_duration(item.duration) }}</td>
<td>{{ "-" if item.usage.input_tokens is none else item.usage.input_tokens }}/{{ "-" if item.usage.output_tokens is none else item.usage.output_tokens }}</td>
<td>{% for answer in format_answer(item) %}<pre>{{ answer }}</pre>{% endfor %}</td>
<td>
{% if item.error_title %}<h4>{{ item.error_title }}</h4>{% endif %}
<pre>{{ item.details }}</pre>
{% if item.validation_title %}<h4>{{ item.validation_title }}</h4><pre>{{ item.validation_explanation }}</pre>{% endif %}
{% if item.tool_usage %}
<ul>
{% for name, usage in item.tool_usage | dictsort %}
<li>{{ name }}: {{ usage.call_count }} call(s)</li>
{% endfor %}
</ul>
{% endif %}
</td>
</tr>
{% endfor %}
</table>
{% endfor %}
</body>
</html>
"""

_html = Environment(
    undefined=StrictUndefined,
    autoescape=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


class HTMLFormatter(Formatter):
    """Self-contained HTML page with a summary and every result."""

    file_ext = "html"

    def __init__(self, clock=lambda: datetime.now(UTC)):
        self.clock = clock
        self.template = _html.from_string(HTML_TEMPLATE)

    def write(self, results: Results, out: TextIO) -> None:
        out.write(
            self.template.render(
                version=__version__,
                generated_at=self.clock().strftime("%Y-%m-%d %H:%M:%S %Z"),
                summaries=summarize(results),
                providers=list(ordered(results)),
                to_status=to_status,
                format_answer=format_answer,
                format_duration=format_duration,
                percent=percent,
            )
        )


FORMATTERS: dict[str, type[Formatter]] = {
    formatter.file_ext: formatter
    for formatter in (HTMLFormatter, CSVFormatter, JSONFormatter, LogFormatter, SummaryLogFormatter)
}


def write_reports(
    results: Results,
    formatters: Iterable[Formatter],
    output_dir: Path | str,
    basename: str,
    out: TextIO,
) -> list[Path]:
    """Write one `<basename>.<ext>` file per formatter.

    A blank basename writes every report to `out` instead. Existing files are
    replaced. Returns the paths written.
    """
    formatters = list(formatters)
    if not basename.strip():
        for formatter in formatters:
            formatter.write(results, out)
        return []

    directory = Path(output_dir).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    paths: list[Path] = []
    for formatter in formatters:
        path = directory / f"{basename}.{formatter.file_ext}"
        with open(path, "w", encoding="utf-8", newline="") as f:
            formatter.write(results, f)
        log.info("Results saved", path=str(path))
        paths.append(path)
    return paths
