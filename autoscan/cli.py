"""Headless auto scan runner for the command line.

- Full run: ``autoscan run <target-id>``
- Continue after a crash/restart: ``autoscan resume <target-id>``
- Progress: ``autoscan status <target-id>``
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from autoscan import __version__
from autoscan.backend import BackendClient
from autoscan.config import Config, get_config, set_config
from autoscan.exceptions import AutoScanError, ConfigurationError, TargetNotFoundError
from autoscan.logging import configure_logging, get_logger
from autoscan.records import JobRecord
from autoscan.runner import PipelineRunner
from autoscan.state import create_state_store
from autoscan.steps import default_pipeline
from autoscan.targets import ScanTarget

log = get_logger(__name__)

app = typer.Typer(help="autoscan - run the reconnaissance auto scan pipeline headlessly")
console = Console()
err_console = Console(stderr=True)


class ConsoleObserver:
    """Prints progress to stderr (keeps stdout clean for results)."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def on_status_changed(self, record: JobRecord) -> None:
        if not self.quiet:
            err_console.print(f"  [{record.status}] {record.tool_name} {record.id}".rstrip(), markup=False)

    def on_running_changed(self, tool_name: str, running: bool) -> None:
        pass

    def on_records_refreshed(self, tool_name: str, records: list[JobRecord]) -> None:
        pass

    def on_step_changed(self, step_name: str) -> None:
        if not self.quiet:
            err_console.print(f"[autoscan] step: {step_name}", markup=False)

    def on_subdomains_refreshed(self, subdomains: list[str]) -> None:
        if not self.quiet:
            err_console.print(f"[autoscan] consolidated subdomains: {len(subdomains)}", markup=False)


def _load_config(config_path: str = "") -> Config:
    cfg = Config.from_yaml(Path(config_path)) if config_path else Config.load()
    set_config(cfg)
    return cfg


async def _list_targets(backend: BackendClient) -> list[ScanTarget]:
    return [ScanTarget.from_payload(item) for item in await backend.list_targets()]


async def _find_target(backend: BackendClient, target_id: str) -> ScanTarget:
    for target in await _list_targets(backend):
        if target.id == target_id:
            return target
    raise TargetNotFoundError(target_id)


async def run_autoscan_headless(
    *,
    target_id: str,
    resume: bool = False,
    session_id: str = "",
    quiet: bool = False,
) -> dict[str, Any]:
    """Run (or resume) the auto scan for one target.

    Returns:
        Dict with ``ok``, ``summary`` (RunSummary dict or None) and ``error``.
    """
    cfg = get_config()
    backend = BackendClient(cfg.backend)
    store = create_state_store(cfg.pipeline.state_store, backend)
    runner = PipelineRunner(backend, store, observer=ConsoleObserver(quiet=quiet), config=cfg)
    result: dict[str, Any] = {"ok": False, "summary": None, "error": ""}
    try:
        if resume:
            summary = await runner.check_and_resume(target_id, await _list_targets(backend))
        else:
            target = await _find_target(backend, target_id)
            summary = await runner.run(target, session_id=session_id)
        result["ok"] = True
        result["summary"] = summary.to_dict() if summary else None
    except AutoScanError as e:
        log.error("Auto scan failed", target_id=target_id, error=str(e))
        result["error"] = str(e)
    finally:
        await store.close()
        await backend.aclose()
    return result


async def _read_state(target_id: str) -> dict[str, Any] | None:
    cfg = get_config()
    backend = BackendClient(cfg.backend)
    store = create_state_store(cfg.pipeline.state_store, backend)
    try:
        state = await store.load(target_id)
    finally:
        await store.close()
        await backend.aclose()
    if state is None:
        return None
    return {
        "target_id": state.target_id,
        "current_step": state.current_step.value,
        "in_progress": state.is_in_progress,
        "started_at": state.started_at.isoformat(),
        "updated_at": state.updated_at.isoformat(),
    }


async def _reset_state(target_id: str) -> None:
    cfg = get_config()
    backend = BackendClient(cfg.backend)
    store = create_state_store(cfg.pipeline.state_store, backend)
    runner = PipelineRunner(backend, store, config=cfg)
    try:
        await runner.reset(target_id)
    finally:
        await store.close()
        await backend.aclose()


def render_summary(summary: dict[str, Any]) -> Table:
    table = Table(title=f"Auto scan {summary['target_id']}", show_header=True, header_style="bold cyan")
    table.add_column("Step")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Seconds", justify="right")
    table.add_column("Error")
    for step in summary["steps"]:
        table.add_row(
            step["step"],
            step["kind"],
            step["status"] or "-",
            f"{step['duration_s']:.1f}",
            step["error"],
        )
    table.caption = (
        f"consolidated subdomains: {summary['final_consolidated_subdomains']}  "
        f"live web servers: {summary['final_live_web_servers']}"
    )
    return table


def _finish(result: dict[str, Any], json_output: bool) -> None:
    if json_output:
        print(json.dumps(result, ensure_ascii=False, indent=2))
    elif result["ok"]:
        if result["summary"] is None:
            console.print("Nothing to resume.")
        else:
            console.print(render_summary(result["summary"]))
    if not result["ok"]:
        if not json_output:
            err_console.print(f"[red]Error: {escape(result['error'])}[/red]")
        raise typer.Exit(code=1)


@app.callback()
def main(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    try:
        _load_config(config)
    except ConfigurationError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=2)
    configure_logging("DEBUG" if verbose else None)


@app.command()
def run(
    target_id: str = typer.Argument(..., help="Scope target id"),
    session_id: str = typer.Option("", "--session-id", help="Auto scan session to post final stats to"),
    quiet: bool = typer.Option(False, "-q", "--quiet", help="Suppress progress output"),
    json_output: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
) -> None:
    """Run the full auto scan for a target."""
    result = asyncio.run(
        run_autoscan_headless(target_id=target_id, session_id=session_id, quiet=quiet)
    )
    _finish(result, json_output)


@app.command()
def resume(
    target_id: str = typer.Argument(..., help="Scope target id"),
    quiet: bool = typer.Option(False, "-q", "--quiet", help="Suppress progress output"),
    json_output: bool = typer.Option(False, "--json", help="Print the summary as JSON"),
) -> None:
    """Resume an interrupted auto scan from its saved step."""
    result = asyncio.run(run_autoscan_headless(target_id=target_id, resume=True, quiet=quiet))
    _finish(result, json_output)


@app.command()
def status(target_id: str = typer.Argument(..., help="Scope target id")) -> None:
    """Show the saved step for a target."""
    try:
        state = asyncio.run(_read_state(target_id))
    except AutoScanError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    if state is None:
        console.print(f"No auto scan recorded for {target_id}")
        return
    console.print(f"{state['target_id']}: {state['current_step']} (updated {state['updated_at']})")


@app.command()
def reset(target_id: str = typer.Argument(..., help="Scope target id")) -> None:
    """Set a target's saved step back to idle."""
    try:
        asyncio.run(_reset_state(target_id))
    except AutoScanError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    console.print(f"{target_id}: idle")


@app.command()
def steps() -> None:
    """List the pipeline steps in order."""
    table = Table(title="Auto scan steps", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Kind")
    table.add_column("Tool")
    for index, step in enumerate(default_pipeline(), start=1):
        table.add_row(str(index), step.name.value, step.kind.value, step.tool_name or "")
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"autoscan v{__version__}")


def cli() -> None:
    """Console-script entry point."""
    try:
        app()
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted; run `autoscan resume` to continue.\n")
        sys.exit(130)


if __name__ == "__main__":
    cli()
