"""flowforge command-line entry point.

Sessions are stored as JSON files, so a build interrupted by a failure or an
unanswered question can be picked up later with ``flowforge resume``.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import click

from flowforge.catalog.client import MCPCatalogClient
from flowforge.cli.commands.settings import settings
from flowforge.cli.logging_config import configure_logging
from flowforge.core.exceptions import FlowforgeError, PhaseExecutionError
from flowforge.core.settings import SettingsManager
from flowforge.orchestrator import Orchestrator
from flowforge.phases import PhaseContext, PhaseResult
from flowforge.planning.completion import CompletionClient
from flowforge.planning.error_handler import PhaseError, classify_error, client_error
from flowforge.session.models import Clarification, Phase
from flowforge.session.state import SessionState, export_workflow
from flowforge.session.store import FileSessionStore


def _get_orchestrator(ctx: click.Context) -> Orchestrator:
    """Orchestrator from ``ctx.obj`` if one was injected, otherwise built from settings."""
    if ctx.obj.get("orchestrator") is not None:
        return ctx.obj["orchestrator"]

    manager = ctx.obj.get("settings_manager") or SettingsManager()
    current = manager.load()
    context = PhaseContext(
        catalog=MCPCatalogClient(current.catalog),
        completion=CompletionClient(current.llm),
        settings=current.pipeline,
    )
    orchestrator = Orchestrator(FileSessionStore(Path(current.pipeline.sessions_dir)), context)
    ctx.obj["orchestrator"] = orchestrator
    return orchestrator


def _echo_error(ctx: click.Context, error: PhaseError) -> None:
    click.echo(error.format_for_cli(verbose=ctx.obj.get("verbose", False)), err=True)


def _report(result: PhaseResult) -> None:
    for warning in result.warnings:
        click.echo(f"⚠️  {result.phase.value}: {warning}", err=True)
    if result.success and not result.paused:
        click.echo(f"✓ {result.phase.value}", err=True)


def _ask(clarification: Clarification) -> str:
    click.echo(f"\n❓ {clarification.question}", err=True)
    if clarification.context:
        click.echo(f"   {clarification.context}", err=True)
    for suggestion in clarification.suggestions:
        click.echo(f"   - {suggestion}", err=True)
    return str(click.prompt("Your answer", err=True))


async def _advance_with_answers(orchestrator: Orchestrator, session_id: str, answers: list[str]) -> None:
    """Advance until the session stops; answer clarifications from ``answers`` or the terminal.

    Raises:
        PhaseExecutionError: When a phase fails
    """
    await orchestrator.context.catalog.connect()

    while True:
        results = await orchestrator.advance(session_id)
        for result in results:
            _report(result)

        last = results[-1] if results else None
        if last is None or (last.success and not last.paused):
            return
        last.raise_for_error()

        clarification = last.clarification or orchestrator.get_session(session_id).current_clarification
        if clarification is None:
            raise PhaseExecutionError(
                Phase.DISCOVERY.value,
                client_error("Discovery paused without a question to answer", phase=Phase.DISCOVERY.value),
            )
        answer = answers.pop(0) if answers else _ask(clarification)
        result = await orchestrator.submit_clarification(session_id, clarification.question_id, answer)
        _report(result)
        result.raise_for_error()


def _write_workflow(state: SessionState, output: Optional[Path]) -> None:
    text = json.dumps(export_workflow(state), indent=2)
    if output:
        output.write_text(text + "\n", encoding="utf-8")
        click.echo(f"Workflow written to {output}", err=True)
    else:
        click.echo(text)


def _run_pipeline(ctx: click.Context, session_id: str, answers: tuple[str, ...], output: Optional[Path]) -> None:
    orchestrator = _get_orchestrator(ctx)
    try:
        asyncio.run(_advance_with_answers(orchestrator, session_id, list(answers)))
        state = orchestrator.get_session(session_id)
    except FlowforgeError as e:
        _echo_error(ctx, classify_error(e))
        click.echo(f"Session {session_id} kept; continue with: flowforge resume {session_id}", err=True)
        ctx.exit(1)

    if state.phase != Phase.COMPLETE:
        click.echo(f"Session {session_id} stopped in phase '{state.phase.value}'", err=True)
        ctx.exit(1)

    try:
        _write_workflow(state, output)
    except FlowforgeError as e:
        _echo_error(ctx, classify_error(e, "export"))
        ctx.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show progress logs and technical error details")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Build n8n workflows from natural language."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command()
@click.argument("prompt")
@click.option("--answer", "answers", multiple=True, help="Answer to a clarification question (repeatable, in order)")
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write the workflow JSON to a file"
)
@click.pass_context
def build(ctx: click.Context, prompt: str, answers: tuple[str, ...], output: Optional[Path]) -> None:
    """Create a session for PROMPT and run it to completion.

    Example:
        flowforge build "When a webhook fires, post to Slack if amount > 100"
    """
    if not prompt.strip():
        _echo_error(ctx, client_error("The prompt is empty", suggestion="Describe the workflow you want"))
        ctx.exit(2)

    orchestrator = _get_orchestrator(ctx)
    state = orchestrator.create_session(prompt)
    click.echo(f"Session: {state.id}", err=True)
    _run_pipeline(ctx, state.id, answers, output)


@cli.command()
@click.argument("session_id")
@click.option("--answer", "answers", multiple=True, help="Answer to a clarification question (repeatable, in order)")
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write the workflow JSON to a file"
)
@click.pass_context
def resume(ctx: click.Context, session_id: str, answers: tuple[str, ...], output: Optional[Path]) -> None:
    """Continue SESSION_ID from its current phase."""
    _run_pipeline(ctx, session_id, answers, output)


@cli.command()
@click.argument("session_id")
@click.pass_context
def status(ctx: click.Context, session_id: str) -> None:
    """Show where SESSION_ID is in the pipeline."""
    try:
        state = _get_orchestrator(ctx).get_session(session_id)
    except FlowforgeError as e:
        _echo_error(ctx, classify_error(e))
        ctx.exit(1)

    click.echo(f"Session: {state.id}")
    click.echo(f"Phase: {state.phase.value}")
    click.echo(f"Version: {state.version}")
    click.echo(f"Operations: {len(state.operation_log)}")
    click.echo(f"Completed phases: {', '.join(p.value for p in state.completed_phases) or '-'}")
    click.echo(f"Nodes: {len(state.selected)} selected, {len(state.configured)} configured")
    if not state.active:
        click.echo("Cancelled: yes")
    if state.current_clarification:
        click.echo(f"Waiting for answer to: {state.current_clarification.question}")


@cli.command()
@click.argument("session_id")
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write the workflow JSON to a file"
)
@click.pass_context
def export(ctx: click.Context, session_id: str, output: Optional[Path]) -> None:
    """Print the workflow JSON of SESSION_ID."""
    try:
        state = _get_orchestrator(ctx).get_session(session_id)
        if not state.workflow.nodes:
            _echo_error(ctx, client_error(f"Session '{session_id}' has no workflow yet", phase=state.phase.value))
            ctx.exit(1)
        _write_workflow(state, output)
    except FlowforgeError as e:
        _echo_error(ctx, classify_error(e, "export"))
        ctx.exit(1)


cli.add_command(settings)
