# cli.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Tuple

import click

from actionsmith import settings
from actionsmith.errors import WorkflowError
from actionsmith.git import local_trigger_fields
from actionsmith.loader import load_workflow
from actionsmith.orchestrator import Environment, Orchestrator, Trigger
from actionsmith.report import write_json
from actionsmith.scheduler import plan
from actionsmith.secrets import EnvSecretVault
from actionsmith.ui.console import Console, get_console, set_console


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []

    default_workflow = directory / settings.WORKFLOW_FILE
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in directory.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  actionsmith run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {settings.WORKFLOW_FILE}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {settings.WORKFLOW_FILE}\n\nOr specify a workflow explicitly:\n  actionsmith run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=["\n".join(f"  {f}" for f in workflow_files)],
            suggestion=f"Specify a workflow explicitly:\n  actionsmith run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def parse_pairs(pairs: Tuple[str, ...], what: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=what)
        key, value = pair.split("=", 1)
        out[key.strip()] = value
    return out


def _report_workflow_error(ctx: click.Context, title: str, e: WorkflowError) -> None:
    console = get_console()
    details = [f"{k}={v}" for k, v in e.details.items()]
    if e.path:
        details.insert(0, f"path={e.path}")
    console.print_error(title, f"{e.kind}: {e.message}", details=details or None)
    if ctx.obj.get("debug", False) and e.context:
        console.print_debug(f"context={e.context}")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the final summary")
@click.pass_context
def cli(ctx, debug, quiet):
    """actionsmith: composable CI/CD workflow runner."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {settings.WORKFLOW_FILE} if present)")
@click.option("--event", default="push", show_default=True, help="Trigger event name")
@click.option("--ref", default=None, help="Git ref for the trigger (defaults to the current checkout)")
@click.option("--sha", default=None, help="Commit SHA for the trigger (defaults to HEAD)")
@click.option("--env", "environment", default=None, help="Target environment (selects scoped secrets)")
@click.option("--env-var", "env_vars", multiple=True, help="Environment-level variable KEY=VALUE (repeatable)")
@click.option("--input", "inputs", multiple=True, help="Workflow input KEY=VALUE (repeatable)")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Number of parallel jobs")
@click.option("--secret-prefix", default=settings.SECRET_PREFIX, show_default=True, help="Env var prefix for secrets")
@click.option("--results-file", default=None, help="Write the redacted result tree as JSON")
@click.option("--save-results", is_flag=True, default=False, help=f"Write the result tree to {settings.RESULTS_DIR}/<run_id>.json")
@click.option("--db", "database_url", default=None, help="Persist the run to this database URL")
@click.pass_context
def run(ctx, workflow, event, ref, sha, environment, env_vars, inputs, workers, secret_prefix, results_file,
        save_results, database_url):
    """Run a workflow locally."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        loaded = load_workflow(workflow_path)
        local = local_trigger_fields()
        trigger = Trigger(
            event_type=event,
            ref=ref or local["ref"] or "refs/heads/main",
            sha=sha or local["sha"],
            actor=local["actor"],
        )
        env_values = parse_pairs(env_vars, "--env-var")
        env = Environment.named(environment or "", env_values) if environment or env_values else None

        orchestrator = Orchestrator(
            registry=loaded.registry,
            vault=EnvSecretVault(prefix=secret_prefix),
            max_workers=workers,
            console=console,
        )
        result = orchestrator.run(
            loaded.workflow,
            trigger,
            environment=env,
            inputs=parse_pairs(inputs, "--input"),
        )

        console.print_results(result)

        if results_file:
            path = write_json(result, results_file)
            console.print_info(f"Results written to {path}")
        if save_results:
            path = write_json(result, Path(settings.RESULTS_DIR) / f"{result.run_id}.json")
            console.print_info(f"Results written to {path}")
        if database_url:
            from actionsmith.store import RunStore
            RunStore(database_url).save(result)
            console.print_debug(f"run {result.run_id} stored in {database_url}")

        if not result.ok:
            sys.exit(1)

    except WorkflowError as e:
        _report_workflow_error(ctx, "Run aborted", e)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except click.ClickException:
        raise
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.option("--event", default=None, help="Also check that the workflow accepts this event")
@click.option("--input", "inputs", multiple=True, help="Also bind workflow input KEY=VALUE (repeatable)")
@click.pass_context
def validate(ctx, workflow, event, inputs):
    """Check a workflow without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        loaded = load_workflow(workflow_path)
        Orchestrator(registry=loaded.registry, console=console).validate(
            loaded.workflow,
            Trigger(event_type=event) if event else None,
            parse_pairs(inputs, "--input") if inputs else None,
        )
    except WorkflowError as e:
        _report_workflow_error(ctx, "Workflow is invalid", e)
        sys.exit(1)
    console.print_info(f"{loaded.workflow.name}: OK ({len(loaded.workflow.jobs)} jobs)")


@cli.command(name="plan")
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def plan_cmd(ctx, workflow):
    """Print the job stages in execution order."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        loaded = load_workflow(workflow_path)
        levels = plan(loaded.workflow.jobs)
    except WorkflowError as e:
        _report_workflow_error(ctx, "Cannot plan workflow", e)
        sys.exit(1)
    console.print_plan(loaded.workflow.name, levels)


if __name__ == "__main__":
    cli()
