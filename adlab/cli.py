"""
CLI entry point for adlab.
"""

import logging
import os
from functools import wraps
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from adlab.definition import load_lab, validate_lab_file
from adlab.exceptions import (
    AdlabError,
    CorruptStateError,
    WorkspaceAlreadyExistsError,
    format_error_for_cli,
)
from adlab.models.lab import LabDefinition
from adlab.util.logging import setup_logging
from adlab.workspace import Workspace

app = typer.Typer(
    name="adlab",
    help="Provision a Hyper-V Active Directory lab from a declarative definition",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    "pending": "dim",
    "running": "yellow",
    "succeeded": "green",
    "failed": "red",
    "skipped": "cyan",
}


def handle_errors(func):
    """Decorator to handle exceptions in CLI commands with nice formatting."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except AdlabError as e:
            # Our custom exceptions with helpful messages
            console.print(format_error_for_cli(e))
            raise typer.Exit(1)
        except FileNotFoundError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            raise typer.Exit(1)
        except Exception as e:
            # Unexpected errors
            logger.debug("Unexpected error", exc_info=True)
            console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
            console.print("\n[yellow]This may be a bug. Re-run with --verbose and check logs/adlab.log[/yellow]")
            raise typer.Exit(1)

    return wrapper


render_app = typer.Typer(help="Render generated artifacts for inspection")
app.add_typer(render_app, name="render")


def _open_workspace() -> Workspace:
    return Workspace.require(Path.cwd())


def _configure_logging(workspace: Workspace, verbose: bool = False) -> None:
    config = workspace.load_config()
    level = "DEBUG" if verbose else config["logging"]["level"]
    setup_logging(level, workspace.log_file(), console=Console(stderr=True))


def _load(workspace: Workspace) -> LabDefinition:
    return load_lab(workspace.lab_file)


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


@app.command()
@handle_errors
def init(
    workspace_dir: str = typer.Argument(..., help="Workspace directory to initialize"),
    with_templates: bool = typer.Option(
        False, "--with-templates", help="Copy default templates for customization"
    ),
    no_sample: bool = typer.Option(False, "--no-sample", help="Do not write a sample lab.yaml"),
):
    """Initialize a new adlab workspace."""
    workspace = Workspace(Path(workspace_dir))
    if workspace.config_file.exists():
        raise WorkspaceAlreadyExistsError(workspace_dir)

    console.print(f"[bold blue]Initializing workspace:[/bold blue] {escape(workspace_dir)}")
    workspace.initialize(with_lab=not no_sample)

    console.print(f"[green]✓ Created directory structure in {escape(workspace_dir)}[/green]")
    console.print("[green]✓ Wrote configuration to adlab.yaml[/green]")
    if not no_sample:
        console.print("[green]✓ Wrote sample lab definition to lab.yaml[/green]")

    if with_templates:
        from adlab.util.templates import TemplateLoader

        loader = TemplateLoader(workspace.root)
        loader.copy_default_templates_to_workspace()
        console.print("[green]✓ Copied default templates to templates/[/green]")
        console.print("[dim]  Workspace templates override the built-in ones[/dim]")

    console.print("\n[dim]Next steps:[/dim]")
    console.print(f"  cd {escape(workspace_dir)}")
    console.print("  # Edit lab.yaml, export the password variables it names, then:")
    console.print("  adlab validate")
    console.print("  adlab run --dry-run")


@app.command()
@handle_errors
def validate():
    """Validate lab.yaml against the schema and its cross-references."""
    workspace = _open_workspace()
    workspace.load_config()

    is_valid, errors = validate_lab_file(workspace.lab_file)
    if not is_valid:
        console.print("[red]✗ Lab definition is invalid:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        raise typer.Exit(1)

    lab = _load(workspace)
    console.print(f"[green]✓ Lab '{escape(lab.name)}' is valid[/green]")
    console.print(
        f"  {len(lab.machines)} machine(s), {len(lab.domain_controllers)} domain controller(s), "
        f"{len(lab.switches)} switch(es)"
    )

    env_vars = sorted(
        {
            lab.local_admin.password_env,
            lab.domain_admin.password_env,
            lab.domain.safe_mode_password_env,
        }
    )
    unset = [v for v in env_vars if not os.environ.get(v)]
    for var in unset:
        console.print(f"[yellow]⚠ Environment variable {var} is not set (required for run)[/yellow]")


@app.command()
@handle_errors
def plan():
    """Show the ordered stage plan and each stage's recorded status."""
    from adlab.pipeline.plan import build_plan
    from adlab.pipeline.state import RunState

    workspace = _open_workspace()
    lab = _load(workspace)
    stage_plan = build_plan(lab)
    state = RunState.load(workspace.state_file(lab.name), lab.name)

    table = Table(title=f"Plan for {escape(lab.name)}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("As")
    table.add_column("Waits for")
    table.add_column("Status")

    for index, stage in enumerate(stage_plan.ordered(), start=1):
        waits = "\n".join(escape(w.description) for w in stage.waits)
        table.add_row(
            str(index),
            escape(stage.id),
            stage.credential.value,
            waits,
            _styled(state.status_of(stage.id).value),
        )

    console.print(table)


@app.command()
@handle_errors
def run(
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show the scripts each stage would run without running them"
    ),
    only: list[str] = typer.Option(None, "--only", help="Run only this stage (repeatable)"),
    start_at: str = typer.Option(None, "--from", help="Start at this stage"),
    force: bool = typer.Option(False, "--force", help="Re-run stages that already succeeded"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on the console"),
):
    """Provision the lab, resuming after the last successful stage."""
    from adlab.pipeline.runner import PipelineRunner, StageOutcome
    from adlab.pipeline.state import StageStatus

    workspace = _open_workspace()
    _configure_logging(workspace, verbose)
    lab = _load(workspace)

    def show(outcome: StageOutcome) -> None:
        label = escape(outcome.stage.id)
        if outcome.note:
            console.print(f"{_styled(outcome.status.value)} {label} [dim]({escape(outcome.note)})[/dim]")
        else:
            console.print(f"{_styled(outcome.status.value)} {label} [dim]{outcome.elapsed:.0f}s[/dim]")
        if dry_run:
            for target, script in outcome.scripts:
                console.print(f"[dim]--- {escape(target)}[/dim]")
                console.print(Syntax(script, "powershell", word_wrap=True))

    runner = PipelineRunner(workspace, lab, dry_run=dry_run, on_stage=show)
    heading = "Dry run" if dry_run else "Provisioning"
    console.print(f"[bold blue]{heading}:[/bold blue] {escape(lab.name)}")

    report = runner.run(only=only or None, start_at=start_at, force=force)

    succeeded = report.count(StageStatus.SUCCEEDED)
    skipped = report.count(StageStatus.SKIPPED)
    console.print(f"\n[green]✓ {succeeded} stage(s) completed[/green], {skipped} already done")
    if dry_run:
        console.print("[dim]Dry run: nothing was sent to the host and no progress was recorded[/dim]")


@app.command()
@handle_errors
def status():
    """Show node milestones and stage progress."""
    from adlab.pipeline.plan import build_plan
    from adlab.pipeline.state import RunState, StageStatus

    workspace = _open_workspace()
    lab = _load(workspace)
    stage_plan = build_plan(lab)
    state = RunState.load(workspace.state_file(lab.name), lab.name)

    nodes = Table(title="Nodes")
    nodes.add_column("Node", style="cyan")
    nodes.add_column("State")
    for node, node_state in state.node_states(stage_plan).items():
        nodes.add_row(escape(node), node_state.value)
    console.print(nodes)

    stages = stage_plan.ordered()
    done = sum(1 for s in stages if state.is_done(s.id))
    console.print(f"\n{done}/{len(stages)} stages complete")

    for stage in stages:
        stage_status = state.status_of(stage.id)
        if stage_status in (StageStatus.FAILED, StageStatus.RUNNING):
            record = state.stages[stage.id]
            console.print(f"{_styled(stage_status.value)} {escape(stage.id)}")
            if record.error:
                console.print(f"  [dim]{escape(record.error)}[/dim]")

    next_stage = next((s for s in stages if not state.is_done(s.id)), None)
    if next_stage is not None:
        console.print(f"\nNext: [cyan]{escape(next_stage.id)}[/cyan] - {escape(next_stage.description)}")
    if state.updated_at:
        console.print(f"[dim]Last update: {state.updated_at}[/dim]")


@render_app.command("unattend")
@handle_errors
def render_unattend_cmd(
    machine: str = typer.Argument(..., help="Machine name"),
    output: Path = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
):
    """Render a machine's answer file with passwords redacted."""
    from adlab.unattend import render_unattend, validate_unattend
    from adlab.util.files import write_text
    from adlab.util.redact import redact_sensitive
    from adlab.util.templates import TemplateLoader

    workspace = _open_workspace()
    lab = _load(workspace)
    try:
        spec = lab.machine(machine)
    except KeyError:
        console.print(f"[red]Error:[/red] unknown machine '{escape(machine)}'")
        console.print(f"[dim]Machines: {', '.join(m.name for m in lab.machines)}[/dim]")
        raise typer.Exit(1)

    password = os.environ.get(lab.local_admin.password_env) or f"<{lab.local_admin.password_env}>"
    xml = render_unattend(lab, spec, TemplateLoader(workspace.root), admin_password=password)
    xml = redact_sensitive(xml, [password])

    errors = validate_unattend(xml)
    if output is not None:
        write_text(output, xml)
        console.print(f"[green]✓ Answer file for {escape(spec.name)} written to {escape(str(output))}[/green]")
    else:
        console.print(Syntax(xml, "xml"))

    if errors:
        console.print("[red]✗ Answer file has problems:[/red]")
        for error in errors:
            console.print(f"  - {escape(error)}")
        raise typer.Exit(1)


@render_app.command("templates")
@handle_errors
def render_templates_cmd():
    """List the templates adlab renders and which ones the workspace overrides."""
    from adlab.util.templates import WORKSPACE, TemplateLoader

    workspace = _open_workspace()
    sources = TemplateLoader(workspace.root).template_sources()

    table = Table(title="Templates")
    table.add_column("Template", style="cyan")
    table.add_column("Source")
    for name, source in sources.items():
        style = "green" if source == WORKSPACE else "dim"
        table.add_row(escape(name), f"[{style}]{source}[/{style}]")
    console.print(table)

    overridden = sum(1 for source in sources.values() if source == WORKSPACE)
    console.print(f"\n{overridden} of {len(sources)} template(s) overridden in templates/")


@app.command()
@handle_errors
def reset(
    stage: list[str] = typer.Option(None, "--stage", help="Reset only this stage (repeatable)"),
):
    """Forget recorded progress so stages run again."""
    from adlab.pipeline.plan import build_plan
    from adlab.pipeline.state import RunState

    workspace = _open_workspace()
    lab = _load(workspace)
    state_file = workspace.state_file(lab.name)
    try:
        state = RunState.load(state_file, lab.name)
    except CorruptStateError:
        if stage:
            raise
        # A full reset discards whatever the file held
        logger.warning("Discarding unreadable state file %s", state_file)
        state = RunState(state_file, lab.name)

    if stage:
        stage_plan = build_plan(lab)
        for stage_id in stage:
            stage_plan.get(stage_id)
        cleared = state.reset(list(stage))
    else:
        cleared = state.reset()

    console.print(f"[green]✓ Reset {len(cleared)} stage(s)[/green]")


if __name__ == "__main__":
    app()
