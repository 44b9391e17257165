import asyncio
import functools
import importlib.metadata
import json
from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.traceback import Traceback

from .config import CONFIG_FILE_NAME, ReplayConfig, load_replay_config, write_default_config
from .errors import ConfigurationError, ReplayCoreError
from .locators.dom import PageTree, build_tree
from .locators.registry import StrategyRegistry
from .locators.resolver import LocatorResolver, ResolutionResult
from .logging_setup import setup_logging
from .replay.actuators import Actuator, TreeActuator
from .replay.controller import ReplayController
from .replay.models import ReplayResult, StepResult
from .replay.reporting import ExecutionSummary, build_test_run, load_bundle, load_steps
from .replay.step_executor import StepExecutor
from .state import APP_STATE
from .utils import CX_REPLAY_HOME, load_document

console = Console()
logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="cx-replay",
    help="Replay recorded browser steps and re-find recorded elements.",
    rich_markup_mode="markdown",
    no_args_is_help=True,
)

STATUS_STYLES = {"passed": "green", "failed": "red", "skipped": "yellow"}


def version_callback(value: bool):
    """Prints the application version and exits."""
    if value:
        try:
            version = importlib.metadata.version("cx-replay")
            console.print(f"cx-replay version: {version}")
        except importlib.metadata.PackageNotFoundError:
            console.print("cx-replay version: unknown (package not installed)")
        raise typer.Exit()


def handle_exceptions(func):
    """
    Turns exceptions escaping a command into a one-line message and exit code 1.
    Known replay errors are reported by class name; anything else is labelled
    unexpected. Verbose mode adds the rich traceback.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        error_console = Console(stderr=True)
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except Exception as e:
            label = type(e).__name__ if isinstance(e, ReplayCoreError) else "Unexpected error"
            error_console.print(f"[bold red]{label}:[/bold red] {escape(str(e))}")
            if APP_STATE.verbose_mode:
                error_console.print(
                    Traceback.from_exception(type(e), e, e.__traceback__, show_locals=True)
                )
            raise typer.Exit(code=1)

    return wrapper


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable detailed DEBUG logging."
    ),
    env_file: Optional[Path] = typer.Option(
        None, "--env-file", help="A .env file with CX_REPLAY_* overrides."
    ),
    log_json: bool = typer.Option(
        False, "--log-json", help="Write logs as JSON lines instead of console text."
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the application's version and exit.",
    ),
):
    """
    **cx-replay** re-finds recorded elements with a chain of locator strategies
    and replays recorded steps against a live or saved page.
    """
    APP_STATE.verbose_mode = verbose
    APP_STATE.env_file = env_file
    setup_logging(verbose, json_output=log_json)


def _load_config(config_file: Path | None) -> ReplayConfig:
    return load_replay_config(config_file, APP_STATE.env_file)


def _load_snapshot(path: Path) -> PageTree:
    data = load_document(path)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Snapshot file {path} does not contain a page document.")
    return build_tree(data)


def _print_resolution(resolution: ResolutionResult):
    table = Table(title="Strategy attempts")
    table.add_column("Strategy", style="cyan")
    table.add_column("Handled")
    table.add_column("Confidence", justify="right")
    table.add_column("Element")
    table.add_column("ms", justify="right")
    for attempt in resolution.attempts:
        result = attempt.result
        table.add_row(
            attempt.strategy,
            "yes" if attempt.can_handle else "no",
            f"{result.confidence:.2f}" if result else "-",
            repr(result.element) if result and result.element is not None else (attempt.error or "-"),
            f"{attempt.duration:.1f}",
        )
    console.print(table)
    if resolution.success:
        console.print(
            f"[bold green]Found[/bold green] {resolution.element!r} via "
            f"[cyan]{resolution.strategy}[/cyan] (confidence {resolution.confidence:.2f}, "
            f"{resolution.retry_cycles} retry cycles)"
        )
    else:
        console.print(f"[bold red]Not found:[/bold red] {escape(str(resolution.error))}")


def _print_step_result(result: StepResult):
    style = STATUS_STYLES.get(result.status, "white")
    line = (
        f"[{style}]{result.status.upper():<7}[/{style}] step {result.step_index + 1} "
        f"({result.step_id}) in {round(result.duration)}ms, {result.attempts} attempt(s)"
    )
    if result.locator_used:
        line += f" via {result.locator_used}"
    if result.error:
        line += f"\n         [dim]{escape(result.error)}[/dim]"
    console.print(line)


def _print_summary(result: ReplayResult):
    summary = ExecutionSummary.from_result(result)
    table = Table(title=f"Replay {result.session_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Steps", str(summary.total_steps))
    table.add_row("Passed", f"[green]{summary.passed_steps}[/green]")
    table.add_row("Failed", f"[red]{summary.failed_steps}[/red]")
    table.add_row("Skipped", f"[yellow]{summary.skipped_steps}[/yellow]")
    table.add_row("Duration", f"{round(summary.duration)}ms")
    if summary.stopped_early:
        table.add_row("Stopped at", f"step {summary.stopped_at_index + 1}")
    if summary.first_error:
        table.add_row("First error", escape(summary.first_error))
    console.print(table)


@app.command()
@handle_exceptions
def strategies(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a replay.yaml file."
    ),
):
    """Lists the registered locator strategies in resolution order."""
    config = _load_config(config_file)
    registry = StrategyRegistry()
    skipped = set(config.resolver.skip_strategies)
    only = set(config.resolver.only_strategies)
    table = Table(title="Locator strategies")
    table.add_column("#", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Priority", justify="right")
    table.add_column("Base confidence", justify="right")
    table.add_column("Active")
    for index, entry in enumerate(registry.describe()["order"], start=1):
        active = entry["enabled"] and entry["name"] not in skipped and (
            not only or entry["name"] in only
        )
        table.add_row(
            str(index),
            entry["name"],
            str(entry["priority"]),
            f"{entry['confidence']:.2f}",
            "[green]yes[/green]" if active else "[dim]no[/dim]",
        )
    console.print(table)


async def _snapshot_url(url: str, browser: str, headless: bool) -> PageTree:
    from .browser.provider import LocalBrowserProvider
    from .browser.snapshot import snapshot_page

    provider = LocalBrowserProvider(browser, headless)
    try:
        page = await provider.open_page()
        await page.goto(url, wait_until="domcontentloaded")
        return await snapshot_page(page)
    finally:
        await provider.close()


@app.command()
@handle_exceptions
def resolve(
    bundle_file: Path = typer.Argument(..., help="JSON or YAML file with a locator bundle."),
    snapshot: Optional[Path] = typer.Option(
        None, "--snapshot", "-s", help="Saved page snapshot (JSON) to search."
    ),
    url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Snapshot this live page instead of a saved one."
    ),
    strategy: Optional[str] = typer.Option(
        None, "--strategy", help="Run only this strategy, once."
    ),
    browser: str = typer.Option("chromium", "--browser", help="Browser for --url."),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a replay.yaml file."
    ),
):
    """Re-finds the element described by a locator bundle and reports every strategy attempt."""
    if (snapshot is None) == (url is None):
        raise ConfigurationError("Pass exactly one of --snapshot or --url.")
    config = _load_config(config_file)
    bundle = load_bundle(bundle_file)
    tree = _load_snapshot(snapshot) if snapshot else asyncio.run(_snapshot_url(url, browser, True))
    resolver = LocatorResolver(StrategyRegistry(), config.resolver)

    if strategy:
        result = resolver.resolve_with(strategy, bundle, tree)
        if result.element is None:
            console.print(f"[bold red]Not found:[/bold red] {escape(result.error or 'no match')}")
            raise typer.Exit(code=1)
        console.print(
            f"[bold green]Found[/bold green] {result.element!r} via "
            f"[cyan]{result.strategy}[/cyan] (confidence {result.confidence:.2f})"
        )
        return

    resolution = asyncio.run(resolver.resolve(bundle, tree))
    _print_resolution(resolution)
    if not resolution.success:
        raise typer.Exit(code=1)


async def _replay(
    steps_path: Path,
    config: ReplayConfig,
    snapshot: Path | None,
    url: str | None,
    browser: str,
    headless: bool,
) -> ReplayResult:
    steps = load_steps(steps_path)
    resolver = LocatorResolver(StrategyRegistry(), config.resolver)
    provider = None
    actuator: Actuator
    if snapshot is not None:
        tree_actuator = TreeActuator(_load_snapshot(snapshot))
        actuator = tree_actuator

        def root_provider():
            return tree_actuator.tree

    else:
        from .browser.actuator import PlaywrightActuator
        from .browser.provider import LocalBrowserProvider
        from .browser.snapshot import snapshot_page

        provider = LocalBrowserProvider(browser, headless)
        page = await provider.open_page()
        if url:
            await page.goto(url, wait_until="domcontentloaded")
        actuator = PlaywrightActuator(page, timeout=config.executor.timeout)

        async def root_provider():
            return await snapshot_page(page)

    try:
        executor = StepExecutor(resolver, actuator, config.executor)
        controller = ReplayController(
            config.replay,
            executor.as_step_function(root_provider),
            on_step_complete=_print_step_result,
        )
        return await controller.start(steps, test_case_name=steps_path.stem)
    finally:
        if provider is not None:
            await provider.close()


@app.command()
@handle_exceptions
def run(
    steps_file: Path = typer.Argument(..., help="JSON or YAML file with recorded steps."),
    url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Open this URL before the first step."
    ),
    snapshot: Optional[Path] = typer.Option(
        None, "--snapshot", "-s", help="Replay against a saved page snapshot instead of a browser."
    ),
    browser: str = typer.Option("chromium", "--browser", help="chromium, firefox or webkit."),
    headless: bool = typer.Option(True, "--headless/--headed", help="Hide the browser window."),
    continue_on_failure: bool = typer.Option(
        False, "--continue-on-failure", help="Keep going after a failed step."
    ),
    retry_attempts: Optional[int] = typer.Option(
        None, "--retry-attempts", min=1, help="Total attempts per step."
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a replay.yaml file."
    ),
    report: Optional[Path] = typer.Option(
        None, "--report", "-r", help="Write a test-run JSON report here."
    ),
    project_id: Optional[str] = typer.Option(None, "--project", help="Project id for the report."),
):
    """
    Replays recorded steps and prints a per-step log and a summary.

    Exits with code 1 when any step fails.
    """
    config = _load_config(config_file)
    replay_changes = {}
    if continue_on_failure:
        replay_changes["continue_on_failure"] = True
    if retry_attempts is not None:
        replay_changes["retry_attempts"] = retry_attempts
    if replay_changes:
        config = config.model_copy(
            update={"replay": config.replay.model_copy(update=replay_changes)}
        )

    result = asyncio.run(_replay(steps_file, config, snapshot, url, browser, headless))
    _print_summary(result)

    if report is not None:
        test_run = build_test_run(result, project_id=project_id)
        report.parent.mkdir(parents=True, exist_ok=True)
        report.write_text(json.dumps(test_run.model_dump(), indent=2), encoding="utf-8")
        console.print(f"Report written to [cyan]{report}[/cyan]")

    if not result.success:
        raise typer.Exit(code=1)


@app.command()
@handle_exceptions
def init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
):
    """Writes a default replay.yaml into the cx-replay home directory."""
    target = CX_REPLAY_HOME / CONFIG_FILE_NAME
    if target.exists() and not force:
        console.print(f"[yellow]{target} already exists.[/yellow] Use --force to overwrite.")
        return
    write_default_config(target)
    console.print(f"[bold green]Created[/bold green] {target}")


if __name__ == "__main__":
    app()
