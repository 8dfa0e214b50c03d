import logging
import sys
from pathlib import Path
from typing import Tuple

import click
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .agents import AgentDirectory, AgentRecord, HistoryLog
from .backends import BACKENDS
from .config import config
from .events import EventType
from .exceptions import (
    AgentBusError,
    ConflictError,
    ForbiddenError,
    MaxAttemptsExceeded,
    NotFoundError,
)
from .executors import DEFAULT_COMMAND, CommandExecutor, WorkingCopyProbe
from .namespace import CoordinationStore
from .supervisor import RetryController

console = Console()
err_console = Console(stderr=True)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def fail(message: str) -> None:
    err_console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


def parse_data(pairs: Tuple[str, ...]) -> dict:
    """Turn key=value arguments into a dict. Arguments without '=' are ignored."""
    data = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if sep and key:
            data[key] = value
    return data


class Context:
    def __init__(self, backend: str, home: str, redis_url: str):
        self.backend = backend
        self.home = home
        self.redis_url = redis_url
        self._store = None

    @property
    def store(self) -> CoordinationStore:
        if self._store is None:
            self._store = CoordinationStore.from_config(
                config, backend=self.backend, home=self.home, redis_url=self.redis_url
            )
        return self._store

    @property
    def agents(self) -> AgentDirectory:
        return AgentDirectory(self.home)

    @property
    def history(self) -> HistoryLog:
        return HistoryLog(self.home)


pass_context = click.make_pass_decorator(Context)


@click.group()
@click.option('--backend', type=click.Choice(BACKENDS), default=config.AGENTBUS_BACKEND,
              show_default=True, help='Coordination storage backend')
@click.option('--home', default=config.AGENTBUS_HOME, show_default=True,
              help='Directory for coordination data and agent records')
@click.option('--redis-url', default=config.REDIS_URL, show_default=True,
              help='Redis URL for the redis backend')
@click.option('-v', '--verbose', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, backend: str, home: str, redis_url: str, verbose: bool):
    """AgentBus - coordinate coding agents working on the same repository"""
    setup_logging(verbose)
    ctx.obj = Context(backend, home, redis_url)


@cli.command()
@click.argument('repo_url')
@pass_context
def init(obj: Context, repo_url: str):
    """Create the coordination namespace for a repository"""
    try:
        obj.store.initialize(repo_url)
    except AgentBusError as e:
        fail(f"Error initializing coordination: {e}")
    console.print(f"[green]Coordination ready at {obj.store.location(repo_url)}[/green]")


@cli.command()
@click.argument('agent')
@click.argument('repo_url')
@click.option('--branch', default='', help='Branch the agent works on')
@click.option('--workdir', default='', help="Path of the agent's working copy")
@pass_context
def register(obj: Context, agent: str, repo_url: str, branch: str, workdir: str):
    """Record which repository an agent works on"""
    record = AgentRecord(
        name=agent,
        repo=repo_url,
        branch=branch,
        workdir=str(Path(workdir).expanduser().resolve()) if workdir else "",
    )
    try:
        obj.agents.save(record)
    except AgentBusError as e:
        fail(f"Register failed: {e}")
    console.print(f"[green]Registered {agent} for {repo_url}[/green]")


@cli.command()
@click.argument('agent')
@click.argument('repo_url')
@click.argument('file')
@pass_context
def claim(obj: Context, agent: str, repo_url: str, file: str):
    """Claim a file for editing"""
    try:
        obj.store.initialize(repo_url)
        obj.store.claims.claim(repo_url, agent, file)
    except ConflictError as e:
        fail(f"Claim failed: {file} is held by {e.held_by} since {e.since.isoformat()}")
    except AgentBusError as e:
        fail(f"Claim failed: {e}")
    console.print(f"Claimed [cyan]{file}[/cyan] for agent [bold]{agent}[/bold]")


@cli.command()
@click.argument('agent')
@click.argument('repo_url')
@click.argument('file')
@pass_context
def release(obj: Context, agent: str, repo_url: str, file: str):
    """Release a file claim"""
    try:
        obj.store.claims.release(repo_url, agent, file)
    except ForbiddenError as e:
        fail(f"Release failed: {file} is held by {e.held_by}, not {agent}")
    except AgentBusError as e:
        fail(f"Release failed: {e}")
    console.print(f"Released [cyan]{file}[/cyan] from agent [bold]{agent}[/bold]")


@cli.command()
@click.argument('agent')
@click.argument('repo_url')
@click.argument('event_type', metavar='TYPE', type=click.Choice([t.value for t in EventType]))
@click.argument('data', nargs=-1)
@pass_context
def notify(obj: Context, agent: str, repo_url: str, event_type: str, data: Tuple[str, ...]):
    """Publish a coordination event, with optional key=value data"""
    try:
        obj.store.initialize(repo_url)
        obj.store.events.publish(repo_url, event_type, agent, parse_data(data))
    except AgentBusError as e:
        fail(f"Notify failed: {e}")
    console.print(f"Published [magenta]{event_type}[/magenta] from agent [bold]{agent}[/bold]")


def claims_table(store: CoordinationStore, repo_url: str) -> Table:
    table = Table(title="File Claims", box=box.ROUNDED)
    table.add_column("File", style="cyan")
    table.add_column("Agent", style="green")
    table.add_column("Since", style="yellow")
    for path, held in sorted(store.claims.list_claims(repo_url).items()):
        table.add_row(path, held.agent, held.claimed_at.isoformat(timespec="seconds"))
    return table


def messages_table(store: CoordinationStore, repo_url: str, limit: int) -> Table:
    table = Table(title="Recent Messages", box=box.ROUNDED)
    table.add_column("Time", style="yellow")
    table.add_column("Type", style="magenta")
    table.add_column("Agent", style="green")
    table.add_column("Data")
    events = store.events.read_all(repo_url)
    for event in events[-limit:] if limit > 0 else events:
        data = " ".join(f"{k}={v}" for k, v in sorted(event.data.items()))
        table.add_row(event.timestamp.strftime("%H:%M:%S"), event.type.value, event.agent, data)
    return table


def state_table(store: CoordinationStore, repo_url: str) -> Table:
    snapshot = store.state.get(repo_url)
    title = "Agent State"
    if snapshot.last_updated:
        title += f" (updated {snapshot.last_updated})"
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Agent", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Branch", style="blue")
    table.add_column("Updated", style="yellow")
    for name, agent_state in sorted(snapshot.agents.items()):
        table.add_row(
            name,
            agent_state.status.value,
            agent_state.branch,
            agent_state.last_update.isoformat(timespec="seconds"),
        )
    return table


@cli.command()
@click.argument('repo_url')
@click.option('--claims', 'show_claims', is_flag=True, help='Show file claims')
@click.option('--messages', 'show_messages', is_flag=True, help='Show recent messages')
@click.option('--state', 'show_state', is_flag=True, help='Show agent state')
@click.option('--limit', default=20, show_default=True, help='Number of messages to show')
@pass_context
def bus(obj: Context, repo_url: str, show_claims: bool, show_messages: bool,
        show_state: bool, limit: int):
    """Show coordination bus state"""
    if not (show_claims or show_messages or show_state):
        show_claims = show_messages = show_state = True
    try:
        obj.store.initialize(repo_url)
        if show_claims:
            console.print(claims_table(obj.store, repo_url))
        if show_messages:
            console.print(messages_table(obj.store, repo_url, limit))
        if show_state:
            console.print(state_table(obj.store, repo_url))
    except AgentBusError as e:
        fail(f"Error reading coordination bus: {e}")


def resolve_workdir(obj: Context, agent: str, workdir: str) -> str:
    if workdir:
        return workdir
    try:
        return obj.agents.load(agent).workdir or "."
    except NotFoundError:
        return "."


@cli.command()
@click.argument('agent')
@click.argument('task')
@click.option('--max-attempts', default=config.AGENTBUS_MAX_ATTEMPTS, show_default=True,
              help='Attempts before giving up')
@click.option('--workdir', default='', help="Agent's working copy (defaults to the registered one)")
@click.option('--command', default=DEFAULT_COMMAND, show_default=True,
              help='Executor command; {prompt} and {agent} are substituted')
@pass_context
def run(obj: Context, agent: str, task: str, max_attempts: int, workdir: str, command: str):
    """Run the agent until tests pass and everything is committed"""
    workdir = resolve_workdir(obj, agent, workdir)
    try:
        store = obj.store
    except AgentBusError as e:
        logging.getLogger(__name__).warning(f"Coordination unavailable (continuing without): {e}")
        store = None

    controller = RetryController(
        agent,
        executor=CommandExecutor(workdir, command=command),
        probe=WorkingCopyProbe(workdir, executor_name=Path(command.split()[0]).name),
        store=store,
        agents=obj.agents,
        history=obj.history,
        max_attempts=max_attempts,
        settle_delay=config.AGENTBUS_SETTLE_DELAY,
        backoff_delay=config.AGENTBUS_BACKOFF_DELAY,
    )

    console.print(f"[blue]Running agent {agent} until done (max {max_attempts} attempts)[/blue]")
    console.print(f"[yellow]Task: {task}[/yellow]")
    try:
        result = controller.run_until_done(task)
    except MaxAttemptsExceeded as e:
        fail(str(e))
    console.print(f"[green]Completed in {result.attempts} attempt(s)[/green]")


@cli.command()
@click.argument('agent')
@click.option('--workdir', default='', help="Agent's working copy (defaults to the registered one)")
@pass_context
def check(obj: Context, agent: str, workdir: str):
    """Check whether an agent's task looks complete"""
    report = WorkingCopyProbe(resolve_workdir(obj, agent, workdir)).check(agent)
    console.print(f"Tests: {report.test_status.value}")
    console.print(f"Uncommitted changes: {str(report.has_uncommitted_changes).lower()}")
    console.print(f"Executor running: {str(report.executor_running).lower()}")
    if report.is_complete:
        console.print("[green]Agent appears complete[/green]")
    else:
        console.print("[yellow]Agent has pending work[/yellow]")


if __name__ == '__main__':
    cli()
