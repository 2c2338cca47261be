"""CLI entry point for autodeploy.

Commands:
- autodeploy init: Create .autodeploy/config.yaml and the workspace
- autodeploy run: Poll the branch and keep the latest commit running
- autodeploy check: Resolve the branch once and show the commit
- autodeploy version: Show version information
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from autodeploy.core.builder import CommandBuilder
from autodeploy.core.config import (
    CONFIG_DIR,
    ConfigError,
    DeployConfig,
    config_path,
    load_config,
)
from autodeploy.core.controller import UpdateCycleController
from autodeploy.core.locks import WorkspaceLock, WorkspaceLockedError
from autodeploy.core.models import CycleResult
from autodeploy.core.poller import Poller
from autodeploy.core.process import ProcessSupervisor
from autodeploy.core.workspace import WorkspaceSynchronizer
from autodeploy.providers.base import FetchError
from autodeploy.providers.github import GitHubSourceProvider

console = Console()

CONFIG_TEMPLATE = """# autodeploy configuration for this project
# OWNER, REPO, BRANCH and GITHUB_TOKEN environment variables override these.

owner: {owner}
repo: {repo}
branch: {branch}

# How often to check the branch for new commits (milliseconds)
poll_interval_ms: 60000

# Local mirror of the repository; wiped and rewritten on every update
workspace: repo

# Never deleted or overwritten by a sync (relative to the workspace)
protected_paths:
  - _DONT_DELETE

# Build runs in the workspace; the entry point comes from package.json "main"
build_command: npm run build
run_command: node
entry_point_default: index

# Environment for the managed process (JSON object file and/or mapping)
# env_file: env.json
env: {{}}
inherit_env: true

# Seconds to wait for the old process before killing its process group
terminate_timeout: 10
"""


def get_project_dir() -> Path:
    """Get the project directory (current directory)."""
    return Path.cwd()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_or_exit(project_dir: Path, **overrides) -> DeployConfig:
    try:
        return load_config(project_dir, overrides=overrides)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _make_provider(config: DeployConfig) -> GitHubSourceProvider:
    return GitHubSourceProvider(
        owner=config.owner,
        repo=config.repo,
        token=config.token,
        api_url=config.api_url,
        timeout=config.request_timeout,
    )


def build_controller(
    config: DeployConfig,
    provider: GitHubSourceProvider,
    supervisor: ProcessSupervisor,
) -> UpdateCycleController:
    """Wire an UpdateCycleController from configuration."""
    return UpdateCycleController(
        provider=provider,
        synchronizer=WorkspaceSynchronizer(),
        builder=CommandBuilder(config.build_command, timeout=config.build_timeout),
        supervisor=supervisor,
        workspace_root=config.workspace,
        run_command=config.run_command,
        entry_point_default=config.entry_point_default,
        protected_paths=config.protected_paths,
        env=config.process_env(),
        terminate_timeout=config.terminate_timeout,
        unkillable_wait=config.unkillable_wait,
    )


def _print_result(result: CycleResult | None) -> None:
    if result is None:
        console.print("[dim]No cycle triggered[/dim]")
    elif result.skipped:
        console.print(f"[yellow]Skipped:[/yellow] {result.reason}")
    elif result.succeeded:
        console.print(
            f"[green]Deployed {result.commit[:7]}[/green] "
            f"({result.entry_point}, pid {result.pid}, {result.duration_seconds:.1f}s)"
        )
    else:
        console.print(f"[red]Cycle failed for {result.commit[:7]}:[/red] {result.reason}")


async def _run_supervisor(config: DeployConfig, once: bool) -> None:
    supervisor = ProcessSupervisor()
    stop = asyncio.Event()

    async with _make_provider(config) as provider:
        controller = build_controller(config, provider, supervisor)
        poller = Poller(provider, controller, config.branch, config.poll_interval)

        def request_stop() -> None:
            logging.getLogger(__name__).info("Shutdown requested")
            stop.set()
            poller.stop()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            # add_signal_handler is unavailable on Windows event loops
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, request_stop)

        try:
            if once:
                _print_result(await poller.run_once())
                process = supervisor.current
                if process is not None and process.is_alive and process.handle is not None:
                    # Stay attached until the program exits or we are told to stop
                    waiters = {
                        asyncio.create_task(process.handle.wait()),
                        asyncio.create_task(stop.wait()),
                    }
                    _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                    for task in pending:
                        task.cancel()
            else:
                await poller.run()
        finally:
            await supervisor.shutdown(config.terminate_timeout)


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """autodeploy - continuous-deployment supervisor.

    Watches a GitHub branch, mirrors each new commit into a local
    workspace, builds it and keeps exactly one instance running.
    """
    pass


@main.command()
@click.option("--owner", default="", help="Repository owner")
@click.option("--repo", default="", help="Repository name")
@click.option("--branch", default="main", show_default=True, help="Branch to follow")
def init(owner: str, repo: str, branch: str) -> None:
    """Initialize the current directory for autodeploy."""
    project_dir = get_project_dir()
    path = config_path(project_dir)

    if path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        CONFIG_TEMPLATE.format(owner=owner or "OWNER", repo=repo or "REPO", branch=branch)
    )

    # The protected directory survives every sync
    workspace = project_dir / "repo"
    (workspace / "_DONT_DELETE").mkdir(parents=True, exist_ok=True)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {path.parent}\n"
            "- config.yaml: Deployment configuration\n"
            f"- {workspace.name}/: Workspace mirror\n"
            f"- {workspace.name}/_DONT_DELETE/: Protected from sync\n\n"
            "Set GITHUB_TOKEN, then run: autodeploy run",
            title="autodeploy Initialized",
        )
    )


@main.command()
@click.option("--once", is_flag=True, help="Deploy the current commit and stay attached until it exits")
@click.option("--branch", "-b", default=None, help="Override the branch to follow")
@click.option("--interval", type=int, default=None, help="Poll interval in milliseconds")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def run(once: bool, branch: str | None, interval: int | None, verbose: bool) -> None:
    """Poll the branch and keep the latest commit running.

    Exits with code 1 when the configuration is invalid or another
    autodeploy instance already holds the workspace lock.

    Example:
        GITHUB_TOKEN=... autodeploy run
    """
    _configure_logging(verbose)
    project_dir = get_project_dir()
    config = _load_or_exit(project_dir, branch=branch, poll_interval_ms=interval)

    console.print(
        f"\n[bold]Following[/bold] {config.owner}/{config.repo}@{config.branch}"
        f" [dim](workspace: {config.workspace})[/dim]\n"
    )

    try:
        with WorkspaceLock(project_dir / CONFIG_DIR):
            asyncio.run(_run_supervisor(config, once))
    except WorkspaceLockedError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@main.command()
@click.option("--branch", "-b", default=None, help="Override the branch to resolve")
def check(branch: str | None) -> None:
    """Resolve the branch once and show its current commit."""
    project_dir = get_project_dir()
    config = _load_or_exit(project_dir, branch=branch)

    async def resolve() -> str:
        async with _make_provider(config) as provider:
            return await provider.resolve_commit(config.branch)

    try:
        commit = asyncio.run(resolve())
    except FetchError as e:
        console.print(f"[red]Error ({e.kind.value}):[/red] {e}")
        return

    table = Table(title="Remote Reference")
    table.add_column("Repository", style="cyan")
    table.add_column("Branch", style="cyan")
    table.add_column("Commit", style="green")
    table.add_row(f"{config.owner}/{config.repo}", config.branch, commit)
    console.print(table)


@main.command()
def version() -> None:
    """Show version information."""
    from autodeploy import __version__

    console.print(f"autodeploy v{__version__}")
    console.print("Continuous-deployment supervisor")


if __name__ == "__main__":
    main()
