"""CLI entrypoint for the autocoder runner."""

from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from agentic_autocoder.config import ConfigError, load_config
from agentic_autocoder.constants import DEFAULT_REPORTS_DIR, DEFAULT_STEP_MODEL
from agentic_autocoder.logging_setup import configure_logging

# Load .env file on CLI startup
load_dotenv()


@click.group()
@click.version_option(package_name="agentic-autocoder")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option("--log-file", type=click.Path(), default=None, help="Also write a debug log to this file")
def cli(verbose: bool, log_file: Optional[str]):
    """Autocoder CLI - plan a coding request and execute it with self-healing retries."""
    configure_logging(verbose=verbose, log_file=log_file)


@cli.command()
def check_config():
    """Check if required environment variables are configured."""
    try:
        config = load_config(require_api_key=True)
        click.echo("Configuration loaded successfully!")
        click.echo("  OPENROUTER_API_KEY: [set]")
        click.echo(f"  Workspace:      {config.workspace_root}")
        click.echo(f"  Planner model:  {config.planner_model}")
        click.echo(f"  Step model:     {config.step_model}")
        click.echo(f"  Diagnosis model: {config.diagnosis_model}")
        click.echo(f"  Max retries:    {config.max_retries} (delay {config.retry_delay_s}s)")
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)


def _print_plan(plan) -> None:
    click.echo(f"\nTask plan ({plan.total_steps} steps):")
    for i, step in enumerate(plan.steps):
        deps = f"  (after {', '.join(str(d + 1) for d in sorted(step.dependencies))})" if step.dependencies else ""
        click.echo(f"  {i + 1}. {step.description}{deps}")
        for f in step.files:
            click.echo(f"       - {f}")


@cli.command("plan")
@click.argument("request")
@click.option("--workspace", type=click.Path(file_okay=False), default=None, help="Workspace root (default: AUTOCODER_WORKSPACE or cwd)")
@click.option("--out", type=click.Path(), default=None, help="Save the plan as YAML for `run --plan`")
def plan_request(request: str, workspace: Optional[str], out: Optional[str]):
    """Break REQUEST into steps without executing anything."""
    from agentic_autocoder.errors import AutocoderError
    from agentic_autocoder.planner import save_plan_file
    from agentic_autocoder.session import AutocoderSession

    try:
        config = load_config(require_api_key=True, workspace_root=workspace)
        with AutocoderSession(config) as session:
            plan = session.plan_request(request)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)
    except (AutocoderError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    _print_plan(plan)
    if out:
        path = save_plan_file(plan, Path(out))
        click.echo(f"\nPlan saved: {path}")


@cli.command("run")
@click.argument("request", required=False, default="")
@click.option("--plan", "plan_file", type=click.Path(exists=True, dir_okay=False), default=None, help="Execute a saved plan instead of planning")
@click.option("--workspace", type=click.Path(file_okay=False), default=None, help="Workspace root (default: AUTOCODER_WORKSPACE or cwd)")
@click.option("--max-retries", type=click.IntRange(min=1), default=None, help="Override AUTOCODER_MAX_RETRIES")
@click.option(
    "--no-graph",
    is_flag=True,
    help="Disable LangGraph tracing (run without graph wrapper)",
)
@click.option(
    "--reports-dir",
    type=click.Path(),
    default=DEFAULT_REPORTS_DIR,
    help=f"Directory for run reports (default: {DEFAULT_REPORTS_DIR})",
)
def run_request(
    request: str,
    plan_file: Optional[str],
    workspace: Optional[str],
    max_retries: Optional[int],
    no_graph: bool,
    reports_dir: str,
):
    """Plan REQUEST and execute every step.

    By default, uses LangGraph for tracing visibility in Studio.
    Use --no-graph to run the plain sequential loop.
    """
    from agentic_autocoder.errors import AutocoderError
    from agentic_autocoder.execution_graph import run_task_graph
    from agentic_autocoder.planner import load_plan_file
    from agentic_autocoder.reports import write_run_report
    from agentic_autocoder.session import AutocoderSession

    try:
        config = load_config(require_api_key=True, workspace_root=workspace)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)
    if max_retries is not None:
        config.max_retries = max_retries

    plan = None
    if plan_file:
        try:
            plan = load_plan_file(Path(plan_file))
        except (AutocoderError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            raise SystemExit(1)
        request = request or plan.original_request
    if not request.strip():
        click.echo("Error: a REQUEST or --plan is required", err=True)
        raise SystemExit(1)

    def on_progress(event: dict) -> None:
        done = sum(1 for s in event["steps"] if s["status"] == "completed")
        click.echo(f"[{done}/{event['totalSteps']}] step cursor at {event['currentStep'] + 1}")

    def on_result(entry) -> None:
        icon = "✓" if entry.succeeded else "✗"
        click.echo(f"  {icon} {entry.description}")

    click.echo(f"Workspace: {config.workspace_root}")
    if not no_graph:
        click.echo("  (LangGraph tracing enabled)")
    click.echo()

    exit_code = 0
    with AutocoderSession(config) as session:
        try:
            if no_graph:
                session.run_request(request, on_progress, on_result, plan=plan)
            else:
                run_task_graph(session, request, on_progress, on_result, plan=plan)
        except (AutocoderError, ValueError, OSError) as e:
            click.echo(f"Error: {e}", err=True)
            exit_code = 1
        result = session.last_result

    if result is not None:
        report_path = write_run_report(result, Path(reports_dir))
        click.echo(f"\nStatus: {result.status}")
        click.echo(f"  Run:    {result.run_id}")
        click.echo(f"  Report: {report_path}")

    raise SystemExit(exit_code)


@cli.command("apply")
@click.argument("response_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--workspace", type=click.Path(file_okay=False), default=None, help="Workspace root (default: AUTOCODER_WORKSPACE or cwd)")
@click.option("--dry-run", is_flag=True, help="List the parsed operations without executing them")
def apply_response(response_file: str, workspace: Optional[str], dry_run: bool):
    """Parse a saved model response and execute its operations.

    RESPONSE_FILE: Text containing $$$ / &&& protocol directives
    """
    from agentic_autocoder.errors import AutocoderError
    from agentic_autocoder.executor import CommandExecutor
    from agentic_autocoder.protocol import parse_response

    text = Path(response_file).read_text(encoding="utf-8")
    warnings = []
    operations = parse_response(text, warnings)
    for warning in warnings:
        click.echo(f"Warning: {warning}", err=True)

    if not operations:
        click.echo("No operations found.")
        return

    if dry_run:
        click.echo(f"{len(operations)} operation(s):")
        for op in operations:
            click.echo(f"  - {op.describe()}")
        return

    try:
        config = load_config(require_api_key=False, workspace_root=workspace)
        executor = CommandExecutor(config.workspace_root)
        for entry in executor.run(operations):
            click.echo(f"  ✓ {entry.description}")
            if entry.output:
                click.echo(f"      {entry.output[:200]}")
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)
    except (AutocoderError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@cli.command("observe")
@click.argument("run_id")
@click.option(
    "--reports-dir",
    type=click.Path(),
    default=DEFAULT_REPORTS_DIR,
    help="Directory for run reports",
)
def observe_run(run_id: str, reports_dir: str):
    """Show a summary of a run.

    RUN_ID: The run identifier printed by `run`

    Read-only. Displays the latest report and its history.
    """
    from agentic_autocoder.observe import print_summary

    print_summary(run_id=run_id, reports_dir=Path(reports_dir))


@cli.group()
def model():
    """Model client commands."""
    pass


@model.command("test")
@click.option(
    "--model", "model_id",
    default=DEFAULT_STEP_MODEL,
    help="Model identifier (e.g., openai/o3-mini, openai/gpt-4o-mini)",
)
@click.option(
    "--timeout",
    default=30.0,
    help="Request timeout in seconds",
)
def model_test(model_id: str, timeout: float):
    """Test model client by making a single API call."""
    from agentic_autocoder.model_client import (
        Message,
        ModelClientError,
        get_openrouter_client,
    )

    click.echo(f"Testing model: {model_id}")
    click.echo(f"Timeout: {timeout}s")

    try:
        config = load_config(require_api_key=True)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)

    messages = [
        Message(role="system", content="You are a helpful assistant. Respond concisely."),
        Message(role="user", content="Say 'Hello from Autocoder!' and nothing else."),
    ]

    try:
        with get_openrouter_client(config.openrouter_api_key) as client:
            click.echo("Calling OpenRouter API...")
            result = client.complete(messages=messages, model=model_id, timeout=timeout)
    except ModelClientError as e:
        click.echo(f"Model client error: {e}", err=True)
        raise SystemExit(1)

    click.echo("\nResponse received:")
    click.echo(f"  Model: {result.model}")
    click.echo(f"  Content: {result.content[:100]}{'...' if len(result.content) > 100 else ''}")
    if result.usage:
        click.echo(f"  Usage: {result.usage}")
    click.echo("\nModel test passed!")


if __name__ == "__main__":
    cli()
