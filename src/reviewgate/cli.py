from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from reviewgate.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from reviewgate.config import (
    DEFAULT_CONFIG_NAME,
    BackendName,
    ConfigError,
    ReviewgateConfig,
    load_config,
    save_config,
)
from reviewgate.dispatch import SpecialistDispatcher
from reviewgate.escalation import DeferredNotifier, EscalationHandler, EscalationNotifier
from reviewgate.models import Issue, ResolutionDirective, Stage, Task, TaskStatus
from reviewgate.orchestrator import InvalidTransitionError, Orchestrator, TaskConflictError
from reviewgate.plan import PlanError, load_plan
from reviewgate.policy import PolicyError, StagePolicyTable
from reviewgate.specialists import (
    BackendReviewerAgent,
    ImplementerAgent,
    PlatformReviewerAgent,
    ReviewerAgent,
    SpecialistAgent,
    SpecReviewerAgent,
    UXReviewerAgent,
)
from reviewgate.state import StateError, StateStore
from reviewgate.verdicts import VerdictParser

logger = logging.getLogger(__name__)

SPECIALIST_CLASSES: dict[str, type[SpecialistAgent]] = {
    ImplementerAgent.role: ImplementerAgent,
    SpecReviewerAgent.role: SpecReviewerAgent,
    PlatformReviewerAgent.role: PlatformReviewerAgent,
    BackendReviewerAgent.role: BackendReviewerAgent,
    UXReviewerAgent.role: UXReviewerAgent,
}
DEFER_CHOICE = "defer"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ReviewgateConfig
    state: StateStore
    orchestrator: Orchestrator


class ClickPromptNotifier:
    """Asks the operator what to do with a blocked task."""

    def notify(
        self, task_id: str, stage: Stage, issue_history: list[Issue]
    ) -> ResolutionDirective | None:
        click.echo(f"Task {task_id} is blocked at {stage.value}.")
        for issue in issue_history:
            click.echo(f"  [{issue.severity.value}] {issue.text}")
        choices = [directive.value for directive in ResolutionDirective] + [DEFER_CHOICE]
        answer = click.prompt(
            "Resolution",
            type=click.Choice(choices),
            default=DEFER_CHOICE,
            show_choices=True,
        )
        if answer == DEFER_CHOICE:
            return None
        return ResolutionDirective(answer)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _state_dir(repo_root: Path, config: ReviewgateConfig) -> Path:
    directory = Path(config.state.directory)
    return directory if directory.is_absolute() else repo_root / directory


def _build_single_backend(
    backend_name: BackendName, repo_root: Path, state: StateStore
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(
            working_directory=repo_root,
            event_hook=lambda event: _record_event(state, event),
        )
    return ClaudeCodeBackend(
        working_directory=repo_root,
        event_hook=lambda event: _record_event(state, event),
    )


def _record_event(state: StateStore, event: dict[str, Any]) -> None:
    try:
        state.record_event(event)
    except StateError as exc:
        logger.warning("Could not record event %s: %s", event.get("event"), exc)


def _build_backend(
    config: ReviewgateConfig, repo_root: Path, state: StateStore
) -> AgentBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root, state),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root, state),
        retry_policy=policy,
        event_hook=lambda event: _record_event(state, event),
    )


def _build_specialists(
    backend: AgentBackend,
    config: ReviewgateConfig,
    policy: StagePolicyTable,
    repo_root: Path,
) -> dict[str, SpecialistAgent]:
    prompt_dir = None
    if config.agents.prompt_dir:
        prompt_dir = Path(config.agents.prompt_dir)
        if not prompt_dir.is_absolute():
            prompt_dir = repo_root / prompt_dir

    specialists: dict[str, SpecialistAgent] = {}
    for role in policy.roles():
        agent_class = SPECIALIST_CLASSES.get(role, ReviewerAgent)
        model = (
            config.agents.implementer_model
            if agent_class is ImplementerAgent
            else config.agents.reviewer_model
        )
        specialists[role] = agent_class(
            backend,
            model=model or None,
            role=role,
            prompt_dir=prompt_dir,
        )
    return specialists


def _build_notifier(config: ReviewgateConfig) -> EscalationNotifier:
    if config.workflow.on_blocked == "prompt":
        return ClickPromptNotifier()
    return DeferredNotifier()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    config.validate()
    state = StateStore(_state_dir(repo_root, config))
    policy = config.build_policy()
    backend = _build_backend(config, repo_root, state)
    orchestrator = Orchestrator(
        dispatcher=SpecialistDispatcher(_build_specialists(backend, config, policy, repo_root)),
        policy=policy,
        escalation=EscalationHandler(
            config.workflow.max_rejections_per_stage,
            notifier=_build_notifier(config),
        ),
        parser=VerdictParser(config.workflow.approval_markers),
        dispatch_timeout_seconds=float(config.workflow.dispatch_timeout_seconds),
        state_store=state,
        event_hook=lambda event: _record_event(state, event),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state=state,
        orchestrator=orchestrator,
    )


def _runtime_or_fail(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except (ConfigError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc


def _stored_task(runtime: Runtime, task_id: str) -> Task:
    payload = runtime.state.get_task(task_id)
    if payload is None:
        raise click.ClickException(f"Task not found: {task_id}")
    return Task.from_dict(payload)


def _task_line(task: Task) -> str:
    return (
        f"{task.id:<20} {task.status.value:<9} {task.stage.value:<12} "
        f"rejections={task.rejection_count()}"
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Review gate workflow CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--max-rejections", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def init_command(backend: str | None, max_rejections: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if max_rejections is not None:
        config.workflow.max_rejections_per_stage = max_rejections
    save_config(config_path, config)

    state = StateStore(_state_dir(repo_root, config))

    click.echo(f"Initialized reviewgate in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Rejection cap per stage: {config.workflow.max_rejections_per_stage}")
    click.echo(f"State: {state.state_dir}")


@cli.command("run")
@click.argument("plan_path", type=click.Path(path_type=Path))
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def run_command(plan_path: Path, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    try:
        descriptors = load_plan(plan_path)
        for descriptor in descriptors:
            runtime.orchestrator.policy.assignment(descriptor.content_type)
            runtime.orchestrator.stored_task(descriptor)
    except (PlanError, PolicyError, TaskConflictError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc

    try:
        summary = asyncio.run(runtime.orchestrator.run(descriptors))
    except (InvalidTransitionError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc

    for descriptor in descriptors:
        click.echo(_task_line(runtime.orchestrator.tasks[descriptor.id]))
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Tasks: {len(summary.completed)}/{summary.total_tasks} complete")
    if summary.blocked:
        raise click.ClickException(
            f"{len(summary.blocked)} task(s) blocked: {', '.join(summary.blocked)}. "
            "Inspect with 'reviewgate history' and settle with 'reviewgate resolve'."
        )


@cli.command("status")
@click.option("--events", "show_events", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def status_command(show_events: bool, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    tasks = [Task.from_dict(item) for item in runtime.state.get_tasks()]
    metrics = runtime.state.get_metrics()
    payload: dict[str, Any] = {
        "tasks": [
            {
                "id": task.id,
                "content_type": task.content_type,
                "status": task.status.value,
                "stage": task.stage.value,
                "rejections": task.rejection_count(),
                "updated_at": task.updated_at,
            }
            for task in tasks
        ],
        "escalations": len(runtime.state.get_escalations()),
        "event_counts": metrics.get("event_counts", {}),
    }
    if show_events:
        payload["events"] = metrics.get("events", [])
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("history")
@click.argument("task_id")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def history_command(task_id: str, as_json: bool, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    task = _stored_task(runtime, task_id)
    if as_json:
        click.echo(json.dumps(task.to_dict(), ensure_ascii=False, indent=2))
        return

    click.echo(_task_line(task))
    for index, verdict in enumerate(task.history, start=1):
        failure = f" ({verdict.failure.value})" if verdict.failure else ""
        click.echo(
            f"{index:>3}. {verdict.stage.value:<12} {verdict.role:<18} "
            f"{verdict.outcome.value}{failure}"
        )
        for issue in verdict.issues:
            click.echo(f"       [{issue.severity.value}] {issue.text}")
    for resolution in task.resolutions:
        note = f": {resolution.note}" if resolution.note else ""
        click.echo(f"  resolution {resolution.directive.value} at {resolution.stage.value}{note}")


@cli.command("resolve")
@click.argument("task_id")
@click.argument(
    "directive", type=click.Choice([directive.value for directive in ResolutionDirective])
)
@click.option("--note", default="", help="Reason recorded with the resolution.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def resolve_command(task_id: str, directive: str, note: str, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    orchestrator = runtime.orchestrator
    task = orchestrator.adopt(_stored_task(runtime, task_id))
    try:
        orchestrator.resolve(task, ResolutionDirective(directive), note=note)
        if task.status is TaskStatus.ACTIVE:
            asyncio.run(orchestrator.process_task(task))
    except (InvalidTransitionError, StateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_task_line(task))


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
