"""CLI entry point for storysmith."""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import click
import structlog

from storysmith.agents.pool import AgentPool, build_agent_factories
from storysmith.config.settings import StorySmithSettings
from storysmith.engine.decision_engine import DecisionEngine
from storysmith.engine.escalation_queue import EscalationQueue
from storysmith.engine.orchestrator import STATE_KEY_PREFIX, WorkflowOrchestrator, state_key
from storysmith.engine.state_manager import StateManager
from storysmith.enums import EscalationStatus
from storysmith.exceptions import (
    StorySmithError,
    WorkflowEscalatedError,
    WorkflowPausedError,
)
from storysmith.models.domain import PullRequestResult
from storysmith.providers.context import MarkdownContextGenerator
from storysmith.providers.git_worktree import GitWorktreeManager
from storysmith.providers.github_pr import GitHubPullRequestAutomator
from storysmith.providers.llm import OpenAICompatibleClient
from storysmith.providers.sprint_status import YamlSprintTracker
from storysmith.providers.test_runner import CommandTestRunner
from storysmith.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

# Exit code for a run that ended waiting on a human.
EXIT_ESCALATED = 2


@click.group()
@click.option("--config", default="storysmith.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """storysmith: autonomous story development pipeline."""
    configure_logging(log_level)

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = StorySmithSettings.from_yaml(str(config_path))
    except StorySmithError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def _run(ctx: click.Context, coro_factory: Callable[[StorySmithSettings], Awaitable[None]], event: str) -> None:
    """Run a coroutine with the CLI's standard error handling."""
    try:
        asyncio.run(coro_factory(ctx.obj["settings"]))
    except StorySmithError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{event}_unexpected", exc_info=True)
        sys.exit(1)


@cli.command()
@click.argument("story_id")
@click.option("--story-file", help="Story markdown file (default: <stories_dir>/<story_id>.md)")
@click.option("--yolo", is_flag=True, help="Do not wait for a human when the story is escalated")
@click.pass_context
def run(ctx: click.Context, story_id: str, story_file: str | None, yolo: bool) -> None:
    """Run (or continue) the pipeline for STORY_ID."""
    _run(ctx, lambda settings: _run_story(settings, story_id, story_file, yolo), "run")


@cli.command()
@click.argument("story_id")
@click.pass_context
def resume(ctx: click.Context, story_id: str) -> None:
    """Resume STORY_ID from its last checkpoint."""
    _run(ctx, lambda settings: _resume_story(settings, story_id), "resume")


@cli.command()
@click.argument("story_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw checkpoint")
@click.pass_context
def status(ctx: click.Context, story_id: str, as_json: bool) -> None:
    """Show the checkpoint of STORY_ID."""
    _run(ctx, lambda settings: _show_status(settings, story_id, as_json), "status")


@cli.command()
@click.pass_context
def stories(ctx: click.Context) -> None:
    """List stories with a live checkpoint."""
    _run(ctx, _list_stories, "stories")


@cli.command()
@click.argument("story_id")
@click.confirmation_option(prompt="Discard the checkpoint and start the story from scratch next time?")
@click.pass_context
def reset(ctx: click.Context, story_id: str) -> None:
    """Delete the checkpoint of STORY_ID, archived copy included."""
    _run(ctx, lambda settings: _reset_story(settings, story_id), "reset")


@cli.group()
def escalations() -> None:
    """Inspect and answer escalations."""


@escalations.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in EscalationStatus]),
    help="Only escalations with this status",
)
@click.option("--workflow", help="Only escalations for this story")
@click.pass_context
def list_escalations(ctx: click.Context, status_filter: str | None, workflow: str | None) -> None:
    """List escalations, oldest first."""
    _run(ctx, lambda settings: _list_escalations(settings, status_filter, workflow), "escalations_list")


@escalations.command("show")
@click.argument("escalation_id")
@click.pass_context
def show_escalation(ctx: click.Context, escalation_id: str) -> None:
    """Show one escalation in full."""
    _run(ctx, lambda settings: _show_escalation(settings, escalation_id), "escalations_show")


@escalations.command("respond")
@click.argument("escalation_id")
@click.argument("response")
@click.pass_context
def respond_escalation(ctx: click.Context, escalation_id: str, response: str) -> None:
    """Answer an escalation. Start RESPONSE with "approve" to let the story continue."""
    _run(ctx, lambda settings: _respond(settings, escalation_id, response), "escalations_respond")


@escalations.command("metrics")
@click.pass_context
def escalation_metrics(ctx: click.Context) -> None:
    """Summarise the escalation queue."""
    _run(ctx, _show_metrics, "escalations_metrics")


def _create_orchestrator(settings: StorySmithSettings) -> tuple[WorkflowOrchestrator, list]:
    """Wire the orchestrator and its collaborators from settings.

    Returns:
        The orchestrator and the async closers to call when done.
    """
    project = settings.project
    pool = AgentPool(build_agent_factories(settings), settings.agents.max_concurrent_agents)
    pr_automator = GitHubPullRequestAutomator.from_config(settings.github)
    decision_llm = OpenAICompatibleClient.from_assignment(settings.agents.assignments[settings.decision.agent])

    orchestrator = WorkflowOrchestrator(
        settings=settings,
        state=StateManager(settings.state_dir),
        agent_pool=pool,
        escalations=EscalationQueue(settings.escalations_dir),
        worktrees=GitWorktreeManager(project.root, project.worktrees_dir, project.base_branch),
        context_generator=MarkdownContextGenerator(
            project.root,
            architecture_doc=project.resolve(project.architecture_doc),
            onboarding_dir=settings.onboarding_dir,
        ),
        pr_automator=pr_automator,
        test_runner=CommandTestRunner(settings.workflow.test_command, settings.workflow.test_timeout),
        sprint_tracker=YamlSprintTracker(settings.sprint_status_path),
        decision_engine=DecisionEngine(settings.onboarding_dir, llm=decision_llm, config=settings.decision),
    )
    return orchestrator, [pool.shutdown, pr_automator.close, decision_llm.close]


async def _drive(
    settings: StorySmithSettings,
    story_id: str,
    start: Callable[[WorkflowOrchestrator], Awaitable[PullRequestResult]],
) -> None:
    orchestrator, closers = _create_orchestrator(settings)
    try:
        pr = await start(orchestrator)
    except WorkflowPausedError as e:
        click.echo(f"Story {story_id} paused before {e.step}. Resume with: storysmith resume {story_id}")
        return
    except WorkflowEscalatedError as e:
        click.echo(f"Story {story_id} needs a human decision: {e.message}")
        click.echo(f"  storysmith escalations show {e.escalation_id}")
        click.echo(f"  storysmith escalations respond {e.escalation_id} approve")
        sys.exit(EXIT_ESCALATED)
    finally:
        for close in closers:
            await close()

    click.echo(f"Story {story_id} complete: {pr.url} ({pr.state})")


async def _run_story(settings: StorySmithSettings, story_id: str, story_file: str | None, yolo: bool) -> None:
    await _drive(
        settings,
        story_id,
        lambda o: o.execute_story_workflow(story_id, story_file=story_file, yolo_mode=yolo),
    )


async def _resume_story(settings: StorySmithSettings, story_id: str) -> None:
    await _drive(settings, story_id, lambda o: o.resume_story_workflow(story_id))


async def _show_status(settings: StorySmithSettings, story_id: str, as_json: bool) -> None:
    state = StateManager(settings.state_dir)
    saved = await state.load_state(state_key(story_id))
    archived = False
    if saved is None:
        saved = await state.load_archived_state(state_key(story_id))
        archived = saved is not None
    if saved is None:
        click.echo(f"No checkpoint for story {story_id}")
        return

    if as_json:
        click.echo(json.dumps(saved, indent=2))
        return

    click.echo(f"Story:        {saved['story_id']}{' (archived)' if archived else ''}")
    click.echo(f"Status:       {saved['status']}")
    click.echo(f"Current step: {saved['current_step']}")
    click.echo(f"Completed:    {', '.join(saved['variables']) or 'none'}")
    click.echo(f"Duration:     {saved['performance']['total_duration_ms'] / 1000:.1f}s")
    for label, key in (("Branch", "branch_name"), ("PR", "pr_url"), ("Escalation", "escalation_id")):
        if saved.get(key):
            click.echo(f"{label + ':':<14}{saved[key]}")
    if saved.get("error"):
        click.echo(f"Error:        {saved['error']}")


async def _list_stories(settings: StorySmithSettings) -> None:
    state = StateManager(settings.state_dir)
    keys = state.list_states(STATE_KEY_PREFIX)
    if not keys:
        click.echo("No stories in progress")
        return
    for key in keys:
        saved = await state.load_state(key)
        if saved is None:
            continue
        click.echo(f"{saved['story_id']:<24} {saved['status']:<12} {saved['current_step']}")


async def _reset_story(settings: StorySmithSettings, story_id: str) -> None:
    if await StateManager(settings.state_dir).delete_state(state_key(story_id), include_archive=True):
        click.echo(f"Checkpoint for story {story_id} deleted")
    else:
        click.echo(f"No checkpoint for story {story_id}")


async def _list_escalations(settings: StorySmithSettings, status_filter: str | None, workflow: str | None) -> None:
    queue = EscalationQueue(settings.escalations_dir)
    items = await queue.list_escalations(
        status=EscalationStatus(status_filter) if status_filter else None,
        workflow_id=workflow,
    )
    if not items:
        click.echo("No escalations")
        return
    for item in items:
        click.echo(f"{item.id}  {item.status.value:<9} {item.workflow_id:<24} {item.confidence:.2f}  {item.question}")


async def _show_escalation(settings: StorySmithSettings, escalation_id: str) -> None:
    escalation = await EscalationQueue(settings.escalations_dir).get_by_id(escalation_id)
    click.echo(escalation.model_dump_json(indent=2))


async def _respond(settings: StorySmithSettings, escalation_id: str, response: str) -> None:
    try:
        escalation = await EscalationQueue(settings.escalations_dir).respond(escalation_id, response)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Escalation {escalation.id} resolved. Continue the story with: storysmith run {escalation.workflow_id}")


async def _show_metrics(settings: StorySmithSettings) -> None:
    metrics = await EscalationQueue(settings.escalations_dir).get_metrics()
    click.echo(f"Total:     {metrics.total}")
    click.echo(f"Pending:   {metrics.pending}")
    click.echo(f"Resolved:  {metrics.resolved}")
    click.echo(f"Avg resolution: {metrics.average_resolution_time_ms / 60000:.1f} min")
    for workflow_id, count in sorted(metrics.by_workflow.items()):
        click.echo(f"  {workflow_id}: {count}")


if __name__ == "__main__":
    cli()
