"""Command-line entry point for evalbox."""

import asyncio
import sys
from datetime import UTC, datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from evalbox import __version__
from evalbox.config import Config, Tasks, set_config
from evalbox.exceptions import EvalBoxError, ToolError
from evalbox.formatters import (
    CSVFormatter,
    Formatter,
    HTMLFormatter,
    JSONFormatter,
    LogFormatter,
    Results,
    SummaryLogFormatter,
    percent,
    summarize,
    write_reports,
)
from evalbox.logging import configure_logging, get_logger
from evalbox.providers import Usage
from evalbox.runner import ResultKind, Runner, RunResult
from evalbox.tools.docker_executor import DockerToolExecutor

log = get_logger(__name__)

app = typer.Typer(help="evalbox - evaluate AI models on tasks with sandboxed tools")

_KIND_STYLES = {
    ResultKind.SUCCESS: "green",
    ResultKind.FAILURE: "yellow",
    ResultKind.ERROR: "red",
    ResultKind.NOT_SUPPORTED: "dim",
}


def _load(config_path: str) -> Config:
    config = Config.load(config_path or None)
    set_config(config)
    return config


def _format_tokens(usage: Usage) -> str:
    """Render token counts as `in/out`; unknown counts show as `-`."""
    counts = (usage.input_tokens, usage.output_tokens)
    return "/".join("-" if count is None else str(count) for count in counts)


def _summary_table(results: list[RunResult]) -> Table:
    table = Table(title="Results", show_header=True, header_style="bold cyan")
    table.add_column("Provider")
    table.add_column("Run")
    table.add_column("Task")
    table.add_column("Result", justify="center")
    table.add_column("Duration", justify="right")
    table.add_column("Tokens in/out", justify="right")
    for item in results:
        style = _KIND_STYLES[item.kind]
        table.add_row(
            item.provider,
            item.run,
            item.task,
            f"[{style}]{item.kind.value}[/{style}]",
            f"{item.duration:.2f}s",
            _format_tokens(item.usage),
        )
    return table


def _run_summary_table(results: Results) -> Table:
    table = Table(title="Summary", show_header=True, header_style="bold cyan")
    for column in ("Provider", "Run", "Passed", "Failed", "Error", "Skipped", "Pass Rate (%)", "Accuracy (%)"):
        table.add_column(column, justify="left" if column in ("Provider", "Run") else "right")
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
        )
    return table


def _formatters(html: bool, csv: bool, json: bool, text: bool) -> list[Formatter]:
    formatters: list[Formatter] = []
    if html:
        formatters.append(HTMLFormatter())
    if csv:
        formatters.append(CSVFormatter())
    if json:
        formatters.append(JSONFormatter())
    if text:
        formatters.extend([LogFormatter(), SummaryLogFormatter()])
    return formatters


async def _run(config: Config, tasks: Tasks) -> Results:
    runner = Runner(config, tasks.task_config.enabled_tasks())
    try:
        await runner.run()
    finally:
        await runner.close()
    return runner.results


@app.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    tasks: str = typer.Option("", "-t", "--tasks", help="Path to task file"),
    output_dir: str = typer.Option(None, "--output-dir", help="Results output directory"),
    output_basename: str = typer.Option(
        None,
        "--output-basename",
        help="Base file name for results; strftime patterns allowed; replaces existing files; blank = stdout",
    ),
    html: bool = typer.Option(True, "--html/--no-html", help="Generate HTML output"),
    csv: bool = typer.Option(False, "--csv/--no-csv", help="Generate CSV output"),
    json: bool = typer.Option(True, "--json/--no-json", help="Generate JSON output"),
    text: bool = typer.Option(False, "--text/--no-text", help="Generate plain-text result and summary logs"),
    log_file: str = typer.Option(None, "--log", help="Log file path; appends if it exists; blank = stderr"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run all enabled tasks on all enabled provider runs."""
    console = Console()
    started = datetime.now(UTC)
    try:
        cfg = _load(config)
        if log_file is not None:
            cfg.log.file = log_file
        configure_logging(cfg.log, verbose=verbose)
        task_path = Path(tasks) if tasks else cfg.resolved_task_source(config or None)
        task_file = Tasks.from_yaml(task_path)
        results = asyncio.run(_run(cfg, task_file))
    except EvalBoxError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    all_results = [item for items in results.values() for item in items]
    console.print(_summary_table(all_results))
    console.print(_run_summary_table(results))

    basename = cfg.output_basename if output_basename is None else output_basename
    paths = write_reports(
        results,
        _formatters(html, csv, json, text),
        cfg.output_dir if output_dir is None else output_dir,
        started.strftime(basename),
        sys.stdout,
    )
    for path in paths:
        console.print(f"Results written to {path}")

    if any(item.kind is ResultKind.ERROR for item in all_results):
        raise typer.Exit(code=1)


async def _validate_tools(config: Config) -> list[tuple[str, str]]:
    problems: list[tuple[str, str]] = []
    async with DockerToolExecutor.from_env() as executor:
        for tool in config.tools:
            try:
                await executor.validate_tool(tool)
            except ToolError as e:
                problems.append((tool.name, str(e)))
    return problems


@app.command("validate-tools")
def validate_tools(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Check that every configured tool image is available locally."""
    console = Console()
    try:
        cfg = _load(config)
        configure_logging(cfg.log, verbose=verbose)
        problems = asyncio.run(_validate_tools(cfg))
    except EvalBoxError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    for name, message in problems:
        console.print(f"[red]{name}[/red]: {message}")
    if problems:
        raise typer.Exit(code=1)
    console.print(f"[green]{len(cfg.tools)} tool(s) ready[/green]")


@app.command()
def version() -> None:
    """Show version information."""
    print(f"evalbox v{__version__}")


if __name__ == "__main__":
    app()
