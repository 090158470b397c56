from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import uuid4

from reviewgate.backends.base import BackendExecutionError
from reviewgate.dispatch import DispatchFailure, Dispatcher
from reviewgate.escalation import EscalationHandler
from reviewgate.models import (
    GATE_STATES,
    FailureKind,
    Gate,
    Issue,
    Outcome,
    Resolution,
    ResolutionDirective,
    ReworkRecord,
    Severity,
    Stage,
    Task,
    TaskDescriptor,
    TaskState,
    TaskStatus,
    Verdict,
    utcnow_iso,
)
from reviewgate.policy import StagePolicyTable
from reviewgate.state.store import StateStore
from reviewgate.verdicts import RAW_RESPONSE_LIMIT, UNPARSEABLE_ISSUE, ParseError, VerdictParser

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]

REWORK_EXCERPT_LIMIT = 400
MANUAL_OVERRIDE_NOTE = "manual override approval"

_REVIEW_STATES = {
    TaskState.AWAITING_SPEC_REVIEW,
    TaskState.AWAITING_CODE_REVIEW,
    TaskState.AWAITING_UX_REVIEW,
}

VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.PENDING: {TaskState.IMPLEMENTING},
    TaskState.IMPLEMENTING: {TaskState.IMPLEMENTING, TaskState.BLOCKED, *_REVIEW_STATES},
    TaskState.AWAITING_SPEC_REVIEW: {
        TaskState.AWAITING_CODE_REVIEW,
        TaskState.IMPLEMENTING,
        TaskState.BLOCKED,
    },
    TaskState.AWAITING_CODE_REVIEW: {
        TaskState.AWAITING_CODE_REVIEW,
        TaskState.AWAITING_UX_REVIEW,
        TaskState.COMPLETE,
        TaskState.IMPLEMENTING,
        TaskState.BLOCKED,
    },
    TaskState.AWAITING_UX_REVIEW: {
        TaskState.COMPLETE,
        TaskState.IMPLEMENTING,
        TaskState.BLOCKED,
    },
    TaskState.COMPLETE: set(),
    TaskState.BLOCKED: {TaskState.IMPLEMENTING, TaskState.COMPLETE, *_REVIEW_STATES},
}


class InvalidTransitionError(RuntimeError):
    """Raised when a task is asked to move along an edge the workflow forbids."""


class TaskConflictError(RuntimeError):
    """Raised when a plan reuses a stored task id for different work."""


def validate_transition(current: TaskState, target: TaskState) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(
            f"Cannot transition task from '{current.value}' to '{target.value}'."
        )


def state_for_gate(gate: Gate) -> TaskState:
    return GATE_STATES[gate.stage]


@dataclass(slots=True)
class RunSummary:
    run_id: str
    started_at: str
    ended_at: str
    total_tasks: int
    completed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class Orchestrator:
    """Drives tasks one at a time through their resolved gate lists.

    Every dispatch is awaited before anything else happens. The resulting
    verdict is appended to the task history first and only then applied as a
    transition, so the history always explains the current state.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        policy: StagePolicyTable,
        escalation: EscalationHandler,
        *,
        parser: VerdictParser | None = None,
        dispatch_timeout_seconds: float = 600.0,
        state_store: StateStore | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        if dispatch_timeout_seconds <= 0:
            raise ValueError("dispatch_timeout_seconds must be positive.")
        self.dispatcher = dispatcher
        self.policy = policy
        self.escalation = escalation
        self.parser = parser or VerdictParser()
        self.dispatch_timeout_seconds = dispatch_timeout_seconds
        self.state = state_store
        self.event_hook = event_hook
        self.tasks: dict[str, Task] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("event %s", event)
        if self.event_hook:
            self.event_hook(event)

    def _persist(self, task: Task) -> None:
        if self.state is not None:
            self.state.upsert_task(task.to_dict())

    def _transition(self, task: Task, target: TaskState) -> None:
        validate_transition(task.state, target)
        previous = task.state
        task.state = target
        task.updated_at = utcnow_iso()
        logger.debug("Task %s: %s -> %s", task.id, previous.value, target.value)

    def load_task(self, descriptor: TaskDescriptor) -> Task:
        """Create the task for ``descriptor``, or resume its persisted copy."""
        existing = self.tasks.get(descriptor.id)
        if existing is not None:
            return existing

        stored = self.stored_task(descriptor)
        if stored is not None:
            task = self.adopt(Task.from_dict(stored))
            logger.info("Resuming task %s at %s (%s).", task.id, task.stage, task.status)
            return task

        gates = self.policy.resolve(descriptor.content_type)
        task = Task(
            id=descriptor.id,
            description=descriptor.text,
            content_type=descriptor.content_type,
            gates=gates,
        )
        self.tasks[task.id] = task
        self._persist(task)
        self._emit(
            {
                "event": "task_loaded",
                "task_id": task.id,
                "content_type": task.content_type,
                "gates": [gate.label for gate in gates],
            }
        )
        return task

    def stored_task(self, descriptor: TaskDescriptor) -> dict[str, Any] | None:
        """Return the persisted record for ``descriptor``, refusing to overwrite other work.

        Stored history is append-only, so a plan that changes the text behind an
        existing id must pick a new id instead.
        """
        if self.state is None:
            return None
        stored = self.state.get_task(descriptor.id)
        if stored is not None and stored.get("description") != descriptor.text:
            raise TaskConflictError(
                f"Task '{descriptor.id}' already has recorded history for a different "
                "description; give the changed task a new id."
            )
        return stored

    def adopt(self, task: Task) -> Task:
        """Register a persisted task and rebuild its rejection counters."""
        self.escalation.replay(task)
        self.tasks[task.id] = task
        return task

    async def run(self, descriptors: Iterable[TaskDescriptor]) -> RunSummary:
        run_id = uuid4().hex[:12]
        started_at = utcnow_iso()
        if self.state is not None:
            self.state.upsert_run(run_id, {"status": "running", "started_at": started_at})
        self._emit({"event": "run_start", "run_id": run_id})

        total = 0
        completed: list[str] = []
        blocked: list[str] = []
        for descriptor in descriptors:
            total += 1
            task = self.load_task(descriptor)
            await self.process_task(task)
            if task.status is TaskStatus.COMPLETE:
                completed.append(task.id)
            else:
                blocked.append(task.id)

        summary = RunSummary(
            run_id=run_id,
            started_at=started_at,
            ended_at=utcnow_iso(),
            total_tasks=total,
            completed=completed,
            blocked=blocked,
        )
        if self.state is not None:
            self.state.upsert_run(run_id, {"status": "finished", **summary.to_dict()})
        self._emit(
            {
                "event": "run_complete",
                "run_id": run_id,
                "completed": len(completed),
                "blocked": len(blocked),
            }
        )
        return summary

    async def process_task(self, task: Task) -> Task:
        while task.status is TaskStatus.ACTIVE:
            await self.step(task)
        return task

    async def step(self, task: Task) -> bool:
        """Run one dispatch for ``task``; return False when it is already terminal."""
        if task.status is not TaskStatus.ACTIVE:
            return False
        if task.state is TaskState.PENDING:
            self._transition(task, TaskState.IMPLEMENTING)
            self._persist(task)
        if task.state is TaskState.IMPLEMENTING:
            await self._run_implementer(task)
        else:
            await self._run_review(task)
        return True

    async def _dispatch(self, gate: Gate, task: Task) -> str:
        try:
            return await asyncio.wait_for(
                self.dispatcher.dispatch(gate, task.description, task.issue_history()),
                timeout=self.dispatch_timeout_seconds,
            )
        except TimeoutError as exc:
            raise DispatchFailure(
                f"{gate.role} did not respond within {self.dispatch_timeout_seconds:.1f}s",
                gate=gate,
            ) from exc
        except (BackendExecutionError, OSError) as exc:
            raise DispatchFailure(f"{gate.role} failed: {exc}", gate=gate) from exc

    async def _run_implementer(self, task: Task) -> None:
        gate = task.gates[0]
        rework = task.in_rework
        try:
            response = await self._dispatch(gate, task)
        except DispatchFailure as exc:
            logger.warning("Implementer dispatch failed for task %s: %s", task.id, exc)
            self.apply_verdict(
                task,
                self._failure_verdict(
                    gate, FailureKind.DISPATCH_FAILURE, f"dispatch failed: {exc}"
                ),
            )
            return
        if not response.strip():
            self.apply_verdict(
                task,
                self._failure_verdict(
                    gate, FailureKind.DISPATCH_FAILURE, "implementer returned an empty response"
                ),
            )
            return

        if not rework:
            self.apply_verdict(
                task,
                Verdict(
                    stage=Stage.IMPLEMENT,
                    outcome=Outcome.APPROVED,
                    role=gate.role,
                    raw_response=response[:RAW_RESPONSE_LIMIT],
                ),
            )
            return

        resume_gate = task.gates[task.gate_index]
        task.rework_log.append(
            ReworkRecord(
                resume_stage=resume_gate.stage,
                role=resume_gate.role,
                response_excerpt=response.strip()[:REWORK_EXCERPT_LIMIT],
            )
        )
        self.escalation.reset(task.id, Stage.IMPLEMENT)
        self._transition(task, state_for_gate(resume_gate))
        self._persist(task)
        self._emit(
            {
                "event": "task_rework_complete",
                "task_id": task.id,
                "resume_gate": resume_gate.label,
                "rework_round": len(task.rework_log),
            }
        )

    async def _run_review(self, task: Task) -> None:
        gate = task.current_gate
        if gate is None:
            return
        try:
            response = await self._dispatch(gate, task)
        except DispatchFailure as exc:
            logger.warning("Review dispatch failed for task %s at %s: %s", task.id, gate.label, exc)
            verdict = self._failure_verdict(
                gate, FailureKind.DISPATCH_FAILURE, f"dispatch failed: {exc}"
            )
        else:
            try:
                verdict = self.parser.parse(response, stage=gate.stage, role=gate.role)
            except ParseError:
                logger.warning("Unparseable response for task %s at %s.", task.id, gate.label)
                verdict = self._failure_verdict(
                    gate, FailureKind.PARSE_ERROR, UNPARSEABLE_ISSUE, raw_response=response
                )
        self.apply_verdict(task, verdict)

    @staticmethod
    def _failure_verdict(
        gate: Gate,
        kind: FailureKind,
        issue_text: str,
        *,
        raw_response: str = "",
    ) -> Verdict:
        return Verdict(
            stage=gate.stage,
            outcome=Outcome.REJECTED,
            issues=[Issue(Severity.IMPORTANT, issue_text)],
            role=gate.role,
            failure=kind,
            raw_response=raw_response.strip()[:RAW_RESPONSE_LIMIT],
        )

    def apply_verdict(self, task: Task, verdict: Verdict) -> bool:
        """Record ``verdict`` and apply its transition.

        Returns False without touching the task when it is already terminal.
        """
        if task.status is not TaskStatus.ACTIVE:
            logger.debug("Ignoring %s verdict for terminal task %s.", verdict.stage, task.id)
            return False
        gate = task.current_gate
        if gate is None or verdict.stage is not gate.stage:
            expected = gate.stage.value if gate else "none"
            raise InvalidTransitionError(
                f"Task {task.id} awaits '{expected}', got a verdict for '{verdict.stage.value}'."
            )
        if verdict.role and verdict.role != gate.role:
            raise InvalidTransitionError(
                f"Task {task.id} awaits reviewer '{gate.role}', "
                f"got a verdict from '{verdict.role}'."
            )
        if task.state is TaskState.PENDING:
            self._transition(task, TaskState.IMPLEMENTING)

        task.record(verdict)
        self._emit(
            {
                "event": "verdict_recorded",
                "task_id": task.id,
                "gate": gate.label,
                "outcome": verdict.outcome.value,
                "issues": len(verdict.issues),
                "blocking_issues": len(verdict.blocking_issues),
                "failure": verdict.failure.value if verdict.failure else None,
            }
        )

        if verdict.approved:
            self.escalation.record_approval(task.id, verdict.stage)
            self._advance(task, verdict.stage)
        else:
            count = self.escalation.record_rejection(task.id, verdict.stage)
            if self.escalation.cap_exceeded(task.id, verdict.stage):
                self._block(task, verdict.stage)
                return True
            logger.info(
                "Task %s rejected at %s (%d/%d); returning to implementer.",
                task.id,
                gate.label,
                count,
                self.escalation.max_rejections,
            )
            self._transition(task, TaskState.IMPLEMENTING)
        self._persist(task)
        return True

    def _advance(self, task: Task, stage: Stage) -> None:
        if stage is Stage.IMPLEMENT:
            next_index = max(task.gate_index, 1)
        else:
            next_index = task.gate_index + 1
        if next_index >= len(task.gates):
            self._transition(task, TaskState.COMPLETE)
            logger.info("Task %s complete.", task.id)
            self._emit({"event": "task_complete", "task_id": task.id})
            return
        task.gate_index = next_index
        self._transition(task, state_for_gate(task.gates[next_index]))

    def _block(self, task: Task, stage: Stage) -> None:
        task.blocked_stage = stage
        self._transition(task, TaskState.BLOCKED)
        self._persist(task)
        issues = task.issue_history()
        logger.warning(
            "Task %s blocked at %s after %d rejection(s).",
            task.id,
            stage.value,
            self.escalation.rejection_count(task.id, stage),
        )
        if self.state is not None:
            self.state.add_escalation(
                {
                    "task_id": task.id,
                    "stage": stage.value,
                    "failure": FailureKind.REJECTION_LOOP.value,
                    "rejections": self.escalation.rejection_count(task.id, stage),
                    "issues": [issue.to_dict() for issue in issues],
                    "recorded_at": utcnow_iso(),
                }
            )
        self._emit(
            {
                "event": "task_blocked",
                "task_id": task.id,
                "stage": stage.value,
                "failure": FailureKind.REJECTION_LOOP.value,
                "issues": len(issues),
            }
        )
        directive = self.escalation.escalate(task)
        if directive is not None:
            self.resolve(task, directive, note="escalation notifier")

    def resolve(self, task: Task, directive: ResolutionDirective, *, note: str = "") -> Task:
        """Apply an external decision to a blocked task."""
        if task.state is not TaskState.BLOCKED or task.blocked_stage is None:
            raise InvalidTransitionError(f"Task {task.id} is not blocked.")
        stage = task.blocked_stage
        task.resolutions.append(
            Resolution(
                directive=directive,
                stage=stage,
                note=note,
                history_length=len(task.history),
            )
        )
        if self.state is not None:
            self.state.add_escalation(
                {
                    "task_id": task.id,
                    "stage": stage.value,
                    "directive": directive.value,
                    "note": note,
                    "recorded_at": utcnow_iso(),
                }
            )
        self._emit(
            {
                "event": "task_resolved",
                "task_id": task.id,
                "stage": stage.value,
                "directive": directive.value,
            }
        )

        if directive is ResolutionDirective.ABANDON:
            logger.info("Task %s abandoned at %s.", task.id, stage.value)
        elif directive is ResolutionDirective.RETRY_WITH_OVERRIDE:
            self.escalation.reset(task.id, stage)
            task.blocked_stage = None
            self._transition(task, TaskState.IMPLEMENTING)
        else:
            gate = task.gates[0] if stage is Stage.IMPLEMENT else task.gates[task.gate_index]
            task.record(
                Verdict(
                    stage=stage,
                    outcome=Outcome.APPROVED,
                    role=gate.role,
                    raw_response=note or MANUAL_OVERRIDE_NOTE,
                )
            )
            self.escalation.record_approval(task.id, stage)
            task.blocked_stage = None
            self._advance(task, stage)
        self._persist(task)
        return task
