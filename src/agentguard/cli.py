"""CLI interface for agentguard.

Quick start:
    agentguard init --human alice          # Create agentguard.yaml and workspaces
    agentguard agent claim auto            # Claim the first free agent
    agentguard agent role code-writer -t login-fix
    agentguard agent release
    agentguard guard                       # Hook mode: reads the payload on stdin

Agent commands identify the calling session through the context the
guard hook stored when it let the command through.
"""

import logging
import sys
from pathlib import Path

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from agentguard import __version__
from agentguard.agents.registry import AgentRegistry
from agentguard.auth.audit import AuditLog, MAX_SESSION_FILES
from agentguard.auth.off_limits import OffLimitsRegistry
from agentguard.auth.policy import VALID_ROLES
from agentguard.config import (
    CONFIG_FILE_NAME,
    DEFAULT_ROOT,
    AgentsConfig,
    GuardConfig,
    ProjectPaths,
    current_human,
    load_config,
    save_config,
)
from agentguard.errors import GuardError
from agentguard.guard import Guard, GuardDecision, HookInput
from agentguard.presets import DEFAULT_POOL

app = typer.Typer(
    name="agentguard",
    help="Access control for concurrent AI agent sessions sharing one working tree",
    no_args_is_help=True,
)

agent_app = typer.Typer(help="Claim, release and manage agent identities")
app.add_typer(agent_app, name="agent")

audit_app = typer.Typer(help="Inspect the audit trail")
app.add_typer(audit_app, name="audit")

offlimits_app = typer.Typer(help="Check and lint files-off-limits.md")
app.add_typer(offlimits_app, name="offlimits")

console = Console()
err_console = Console(stderr=True)

OFF_LIMITS_TEMPLATE = """# Off-limits

Paths listed here are blocked for every agent, whatever its role.

```
.env
.env.*
secrets/**
**/*.pem
**/*.key
```

## Whitelist

- .env.example
"""


def _fail(error: GuardError) -> None:
    console.print(f"[red]{error.message}[/red]")
    if error.hint:
        console.print(f"[dim]{error.hint}[/dim]")
    raise typer.Exit(1)


def _registry() -> AgentRegistry:
    try:
        return AgentRegistry.open()
    except GuardError as e:
        _fail(e)


def _session_id(registry: AgentRegistry) -> str | None:
    return registry.session_context()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@app.command()
def version() -> None:
    """Show the agentguard version."""
    console.print(f"agentguard version {__version__}")


@app.command()
def init(
    human: str = typer.Option(None, "--human", help="Assign the whole pool to this human"),
    root: str = typer.Option(DEFAULT_ROOT, "--root", help="Data directory name"),
    agents: int = typer.Option(5, "--agents", "-n", help="Number of preset agents in the pool"),
) -> None:
    """Initialize agentguard in the current directory.

    Creates agentguard.yaml, the data directory, a starter
    files-off-limits.md and one workspace per agent.
    """
    config_path = Path.cwd() / CONFIG_FILE_NAME
    if config_path.exists():
        console.print(f"[yellow]{CONFIG_FILE_NAME} already exists in {Path.cwd()}[/yellow]")
        return

    pool = list(DEFAULT_POOL[: max(1, min(agents, len(DEFAULT_POOL)))])
    human = human or current_human()
    config = GuardConfig(
        root=root,
        agents=AgentsConfig(pool=pool, assignments={human: list(pool)} if human else {}),
    )
    save_config(config, config_path)

    registry = AgentRegistry(ProjectPaths.resolve(Path.cwd(), config), config)
    registry.audit.ensure_audit_dir()
    off_limits = registry.paths.off_limits_file
    if not off_limits.exists():
        off_limits.parent.mkdir(parents=True, exist_ok=True)
        off_limits.write_text(OFF_LIMITS_TEMPLATE, encoding="utf-8")
    for name in pool:
        registry.scaffolder.scaffold_agent(registry.paths.agents_dir, name)

    console.print(f"[green]Created {CONFIG_FILE_NAME} with {len(pool)} agents[/green]")
    if not human:
        console.print("[dim]No human assigned. Set AGENTGUARD_HUMAN and use 'agentguard agent reassign'.[/dim]")


@app.command()
def guard(
    action: str = typer.Option(None, "--action", help="Action being attempted (edit, write, delete, read)"),
    path: str = typer.Option(None, "--path", help="Path being accessed"),
    command: str = typer.Option(None, "--command", help="Shell command to analyze"),
) -> None:
    """Check whether the current agent may perform an action.

    With no options, reads the hook payload from stdin. Exit code 0
    allows the action, 2 blocks it.
    """
    try:
        checker = Guard.open()
    except GuardError as e:
        err_console.print(f"BLOCKED: {e}")
        raise typer.Exit(2)

    if action or path or command:
        decision = checker.check_manual(action=action, path=path, command=command)
    else:
        payload = "" if sys.stdin.isatty() else sys.stdin.read()
        hook = HookInput()
        if payload.strip():
            try:
                hook = HookInput.model_validate_json(payload)
            except PydanticValidationError as e:
                err_console.print(f"WARNING: Failed to parse hook input: {e}")
        decision = checker.check_hook(hook)

    _emit(decision)


def _emit(decision: GuardDecision) -> None:
    for message in decision.messages:
        err_console.print(message, markup=False, highlight=False)
    if decision.exit_code:
        raise typer.Exit(decision.exit_code)


@app.command()
def whoami() -> None:
    """Show the agent claimed by this session."""
    registry = _registry()
    session_id = _session_id(registry)
    agent = registry.get_current_agent(session_id)

    if agent is None:
        console.print("[dim]No agent identity assigned to this session.[/dim]")
        console.print("[dim]Claim one with: agentguard agent claim auto[/dim]")
        return

    table = Table(title=f"Agent {agent.name}")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Status", agent.status.value)
    table.add_row("Role", agent.role or "(none)")
    table.add_row("Task", agent.task or "(none)")
    table.add_row("Human", agent.assigned_human or "(unassigned)")
    table.add_row("Since", agent.since.isoformat() if agent.since else "-")
    table.add_row("Session", session_id or "-")
    console.print(table)


# ── agent ─────────────────────────────────────────────


@agent_app.command("claim")
def agent_claim(
    name: str = typer.Argument(..., help="Agent name, single letter, or 'auto'"),
) -> None:
    """Claim an agent identity for this session."""
    registry = _registry()
    try:
        if name.lower() == "auto":
            state = registry.claim_auto()
        else:
            state = registry.claim(name)
    except GuardError as e:
        _fail(e)

    console.print(f"[green]You are now {state.name}.[/green]")
    console.print(f"[dim]Read {registry.root_name}/agents/{state.name}/workflow.md, then pick a role:[/dim]")
    console.print("[dim]  agentguard agent role <role> [--task <name>][/dim]")


@agent_app.command("release")
def agent_release() -> None:
    """Release this session's agent."""
    registry = _registry()
    try:
        name = registry.release(_session_id(registry))
    except GuardError as e:
        _fail(e)
    console.print(f"[green]Released {name}.[/green]")


@agent_app.command("role")
def agent_role(
    role: str = typer.Argument(..., help=f"One of: {', '.join(VALID_ROLES)}"),
    task: str = typer.Option(None, "--task", "-t", help="Task this role applies to"),
) -> None:
    """Set the role (and task) of this session's agent."""
    registry = _registry()
    try:
        state = registry.set_role(_session_id(registry), role, task)
    except GuardError as e:
        _fail(e)

    console.print(f"[green]{state.name} is now {role}" + (f" on {task}" if task else "") + "[/green]")
    for pattern in state.allowed_paths:
        console.print(f"  [green]+[/green] {pattern}")
    for pattern in state.denied_paths:
        console.print(f"  [red]-[/red] {pattern}")


@agent_app.command("list")
def agent_list(
    free: bool = typer.Option(False, "--free", help="Only show free agents"),
) -> None:
    """List agents and their status."""
    registry = _registry()
    states = registry.free_agents() if free else registry.all_states()

    table = Table(title="Agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Status")
    table.add_column("Role")
    table.add_column("Task")
    table.add_column("Human")

    colors = {"free": "green", "working": "yellow", "reviewing": "magenta"}
    for state in states:
        color = colors[state.status.value]
        table.add_row(
            state.name,
            f"[{color}]{state.status.value}[/{color}]",
            state.role or "-",
            state.task or "-",
            state.assigned_human or "-",
        )
    console.print(table)


@agent_app.command("new")
def agent_new(
    name: str = typer.Argument(..., help="New agent name"),
    human: str = typer.Argument(..., help="Human the agent is assigned to"),
) -> None:
    """Add an agent to the pool."""
    try:
        created = _registry().create_agent(name, human)
    except GuardError as e:
        _fail(e)
    console.print(f"[green]Created agent {created} for {human}.[/green]")


@agent_app.command("rename")
def agent_rename(
    old_name: str = typer.Argument(..., help="Current agent name"),
    new_name: str = typer.Argument(..., help="New agent name"),
) -> None:
    """Rename an agent."""
    try:
        renamed = _registry().rename_agent(old_name, new_name)
    except GuardError as e:
        _fail(e)
    console.print(f"[green]Renamed {old_name} to {renamed}.[/green]")


@agent_app.command("remove")
def agent_remove(
    name: str = typer.Argument(..., help="Agent to remove"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Remove an agent and delete its workspace."""
    if not force and not typer.confirm(f"Remove agent {name} and delete its workspace?"):
        raise typer.Exit(0)
    try:
        removed = _registry().remove_agent(name)
    except GuardError as e:
        _fail(e)
    console.print(f"[green]Removed agent {removed}.[/green]")


@agent_app.command("reassign")
def agent_reassign(
    name: str = typer.Argument(..., help="Agent to reassign"),
    human: str = typer.Argument(..., help="New human"),
) -> None:
    """Assign an agent to a different human."""
    try:
        agent = _registry().reassign_agent(name, human)
    except GuardError as e:
        _fail(e)
    console.print(f"[green]{agent} is now assigned to {human}.[/green]")


# ── audit ─────────────────────────────────────────────


def _audit_log() -> AuditLog:
    config = load_config()
    paths = ProjectPaths.resolve(None, config)
    return AuditLog(paths.audit_dir, paths.project_root)


@audit_app.command("list")
def audit_list(
    year: str = typer.Option(None, "--year", "-y", help="Only sessions from this year"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum sessions to show"),
) -> None:
    """List recorded sessions, newest first."""
    try:
        log = _audit_log()
    except GuardError as e:
        _fail(e)

    files = log.list_session_files(year)
    if not files:
        console.print("[dim]No audit sessions found.[/dim]")
        return

    if len(files) >= MAX_SESSION_FILES:
        console.print(
            f"[yellow]More than {MAX_SESSION_FILES:,} session files. Consider filtering with --year.[/yellow]"
        )

    console.print(f"Found {len(files)} session(s):")
    for path in files[:limit]:
        console.print(f"  {path.stem}")
    if len(files) > limit:
        console.print(f"  [dim]... and {len(files) - limit} more[/dim]")


@audit_app.command("show")
def audit_show(
    session_id: str = typer.Argument(..., help="Session id"),
) -> None:
    """Show every event of one session."""
    try:
        session = _audit_log().get_session(session_id)
    except GuardError as e:
        _fail(e)

    if session is None:
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]Session:[/bold] {session.session_id}")
    console.print(f"Agent: {session.agent_name or '(none)'}")
    console.print(f"Human: {session.human or '(none)'}")
    console.print(f"Started: {session.started:%Y-%m-%d %H:%M:%S}")
    console.print(f"Git HEAD: {session.git_head or '(none)'}")

    table = Table(show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Details")
    for event in session.events:
        style = "red" if event.event_type.value == "blocked" else ""
        table.add_row(
            f"{event.timestamp:%H:%M:%S}",
            event.event_type.value,
            event.summary(),
            style=style,
        )
    console.print(table)


# ── offlimits ─────────────────────────────────────────


def _off_limits() -> tuple[OffLimitsRegistry, ProjectPaths]:
    config = load_config()
    paths = ProjectPaths.resolve(None, config)
    return OffLimitsRegistry.load(paths.off_limits_file), paths


@offlimits_app.command("check")
def offlimits_check(
    path: str = typer.Argument(..., help="Path to check"),
) -> None:
    """Check whether a path is off-limits."""
    try:
        registry, _ = _off_limits()
    except GuardError as e:
        _fail(e)

    pattern = registry.is_off_limits(path)
    if pattern is None:
        console.print(f"[green]{path} is not off-limits.[/green]")
        return
    console.print(f"[red]{path} is off-limits (pattern: {pattern}).[/red]")
    raise typer.Exit(1)


@offlimits_app.command("validate")
def offlimits_validate() -> None:
    """Lint files-off-limits.md and report literal paths that do not exist."""
    try:
        registry, paths = _off_limits()
    except GuardError as e:
        _fail(e)

    if not registry.exists():
        console.print(f"[yellow]{paths.off_limits_file} does not exist; nothing is off-limits.[/yellow]")
        return

    issues = registry.validate_format()
    missing = registry.validate_literal_paths(paths.project_root)

    for issue in issues:
        color = "red" if issue.is_error else "yellow"
        label = "ERROR" if issue.is_error else "WARNING"
        console.print(f"[{color}]{label}: {issue.message}[/{color}]")
    for pattern in missing:
        console.print(f"[yellow]WARNING: Literal path does not exist: {pattern}[/yellow]")

    if not issues and not missing:
        console.print(
            f"[green]{len(registry.patterns)} off-limits and {len(registry.whitelist)} whitelist patterns OK.[/green]"
        )
    if any(issue.is_error for issue in issues):
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
