#!/usr/bin/env python3
"""
Scenario Runner - browser scenario sessions and remote test runs

Start the HTTP trigger surface, run test commands locally with live output,
or make sure Playwright browser engines are installed.
"""
import asyncio
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scenario_runner import __version__

console = Console()
err_console = Console(stderr=True)


def _load_config(engine=None):
    from scenario_runner.config import RunnerConfig

    config = RunnerConfig.from_env()
    if engine:
        from scenario_runner.browser.models import EngineKind
        config.engine = EngineKind.parse(engine)
    return config


@click.group()
@click.version_option(version=__version__, prog_name="scenario-runner")
def cli():
    """Scenario Runner - browser scenario sessions and remote test runs"""
    pass


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to (use 0.0.0.0 for external access)")
@click.option("--port", default=8080, envvar="PORT", help="Port to bind to")
def serve(host: str, port: int):
    """Start the HTTP trigger server"""
    from scenario_runner.server import run_server

    console.print(Panel.fit(
        "[bold cyan]Scenario Runner[/bold cyan] - remote test runs\n"
        f"[dim]Starting server on http://{host}:{port}[/dim]",
        border_style="cyan"
    ))
    run_server(host=host, port=port, config=_load_config())


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
@click.option("--timeout", type=float, default=None, help="Kill the run after this many seconds")
@click.option("--idle-timeout", type=float, default=None, help="Kill the run after this long without output")
def run(command, timeout, idle_timeout):
    """Run a test command locally with live output (default: configured test command)"""
    from scenario_runner.logging_config import setup_logging

    setup_logging()
    config = _load_config()
    argv = list(command) or config.test_command
    status = asyncio.run(_run(argv, timeout or config.run_timeout, idle_timeout or config.run_idle_timeout))
    sys.exit(_exit_code(status))


def _exit_code(status) -> int:
    """Process exit code for a finished run. Killed or unstarted runs map to 1."""
    if status.success:
        return 0
    if status.exit_code is not None and status.exit_code > 0:
        return status.exit_code
    return 1


async def _run(argv, timeout, idle_timeout):
    from scenario_runner.runs.models import OutputChunk, StreamName
    from scenario_runner.runs.orchestrator import ProcessRunOrchestrator

    orchestrator = ProcessRunOrchestrator()
    status = None
    async for item in orchestrator.run(
        argv[0], argv[1:],
        env_overlay={"CI": "true"},
        timeout=timeout,
        idle_timeout=idle_timeout,
    ):
        if isinstance(item, OutputChunk):
            target = sys.stderr if item.stream == StreamName.STDERR else sys.stdout
            target.write(item.data)
            target.flush()
        else:
            status = item

    style = "green" if status.success else "red"
    console.print(f"\n[bold {style}]{status.summary_line()}[/bold {style}] in {status.duration_seconds:.1f}s")
    return status


@cli.command()
@click.argument("engine", required=False)
@click.option("--timeout", type=float, default=None, help="Installer wall-clock limit in seconds")
@click.option("--with-deps", is_flag=True, help="Also install the engine's system dependencies")
@click.option("--force", is_flag=True, help="Install even if the engine already launches")
def install(engine, timeout, with_deps, force):
    """Make sure a browser engine is installed"""
    from scenario_runner.browser.provisioner import BrowserProvisioner
    from scenario_runner.logging_config import setup_logging

    setup_logging()
    config = _load_config(engine)
    if timeout:
        config.install_timeout = timeout
    if with_deps:
        config.install_with_deps = True
    provisioner = BrowserProvisioner(config)

    async def _install():
        if not force and await provisioner.probe(config.engine):
            from scenario_runner.browser.models import InstallationRecord, InstallOutcome
            return InstallationRecord(engine=config.engine, outcome=InstallOutcome.ALREADY_AVAILABLE)
        return await provisioner.install(config.engine)

    record = asyncio.run(_install())

    table = Table(title=f"Browser install: {record.engine.value}", show_header=False)
    table.add_column("Field", style="dim")
    table.add_column("Value")
    outcome_style = "green" if record.succeeded else "red"
    table.add_row("Outcome", f"[{outcome_style}]{record.outcome.value}[/{outcome_style}]")
    table.add_row("Elapsed", f"{record.elapsed_seconds:.1f}s")
    table.add_row("Command", " ".join(record.command) or "-")
    table.add_row("Exit code", str(record.exit_code) if record.exit_code is not None else "-")
    console.print(table)
    if record.output_tail and not record.succeeded:
        console.print(Panel(record.output_tail, title="Installer output", border_style="red"))
    sys.exit(0 if record.succeeded else 1)


@cli.command()
@click.argument("engine", required=False)
def check(engine):
    """Trial-launch a browser engine without installing it"""
    from scenario_runner.browser.provisioner import BrowserProvisioner

    config = _load_config(engine)
    available = asyncio.run(BrowserProvisioner(config).probe(config.engine))
    if available:
        console.print(f"[green]✓[/green] {config.engine.value} launches")
    else:
        console.print(f"[red]✗[/red] {config.engine.value} is not available. Install with: scenario-runner install {config.engine.value}")
    sys.exit(0 if available else 1)


@cli.command()
@click.option("--url", default="http://localhost:8080", help="Base URL of a running server")
@click.option("--timeout", type=float, default=None, help="Server-side run timeout in seconds")
@click.argument("args", nargs=-1)
def trigger(url, timeout, args):
    """Trigger a test run on a remote server and stream its output"""
    import requests

    payload = {"args": list(args)}
    if timeout:
        payload["timeout"] = timeout
    try:
        with requests.post(f"{url.rstrip('/')}/run-tests", json=payload, stream=True, timeout=(10, None)) as resp:
            resp.raise_for_status()
            last_line = ""
            for text in resp.iter_content(chunk_size=None, decode_unicode=True):
                sys.stdout.write(text)
                sys.stdout.flush()
                if text.strip():
                    last_line = text.strip().splitlines()[-1]
    except requests.ConnectionError:
        err_console.print(f"[red]Error:[/red] Server not reachable at {url}. Start with: scenario-runner serve")
        sys.exit(2)
    except requests.HTTPError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        sys.exit(2)
    sys.exit(0 if last_line.startswith("Result: PASS") else 1)


if __name__ == "__main__":
    cli()
