import asyncio
from pathlib import Path
from typing import Any

import pytest

from reviewgate.backends.base import BackendExecutionError
from reviewgate.escalation import EscalationHandler, EscalationNotifier, StaticNotifier
from reviewgate.models import (
    FailureKind,
    Gate,
    Issue,
    Outcome,
    ResolutionDirective,
    Severity,
    Stage,
    TaskDescriptor,
    TaskState,
    TaskStatus,
    Verdict,
)
from reviewgate.orchestrator import (
    InvalidTransitionError,
    Orchestrator,
    TaskConflictError,
    validate_transition,
)
from reviewgate.policy import PolicyError, StagePolicyTable
from reviewgate.state import StateStore
from reviewgate.verdicts import UNPARSEABLE_ISSUE

IMPLEMENTED = "Implemented the change and ran the tests."


class ScriptedDispatcher:
    """Answers each role from a queue; implementers finish and reviewers approve by default."""

    def __init__(self, responses: dict[str, list[Any]] | None = None) -> None:
        self.responses = {role: list(items) for role, items in (responses or {}).items()}
        self.calls: list[tuple[str, str, list[Issue]]] = []

    @property
    def labels(self) -> list[str]:
        return [label for label, _, _ in self.calls]

    def calls_for(self, role: str) -> list[list[Issue]]:
        return [issues for label, _, issues in self.calls if label.endswith(f":{role}")]

    async def dispatch(self, gate: Gate, task_text: str, issue_history: list[Issue]) -> str:
        self.calls.append((gate.label, task_text, list(issue_history)))
        queue = self.responses.get(gate.role)
        if queue:
            item = queue.pop(0)
        else:
            item = IMPLEMENTED if gate.role == "implementer" else "APPROVED"
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, float):
            await asyncio.sleep(item)
            return "APPROVED"
        return item


def _orchestrator(
    dispatcher: ScriptedDispatcher,
    *,
    cap: int = 3,
    notifier: EscalationNotifier | None = None,
    **kwargs: Any,
) -> Orchestrator:
    return Orchestrator(
        dispatcher,
        StagePolicyTable(),
        EscalationHandler(cap, notifier),
        **kwargs,
    )


def _descriptor(task_id: str = "task-1", content_type: str = "platform-ui") -> TaskDescriptor:
    return TaskDescriptor(id=task_id, text=f"Build {task_id}", content_type=content_type)


def test_platform_task_loops_on_rejection_and_completes() -> None:
    dispatcher = ScriptedDispatcher(
        {
            "platform-reviewer": [
                "Important:\n- missing accessibility label\n\nREJECTED",
                "APPROVED",
            ],
            "ux-reviewer": ["Important: no undo\nREJECTED", "APPROVED"],
        }
    )
    orchestrator = _orchestrator(dispatcher)
    task = orchestrator.load_task(_descriptor())

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.COMPLETE
    assert task.stage is Stage.COMPLETE
    assert task.rejection_count() == 2
    assert task.visited_stages() == [
        Stage.IMPLEMENT,
        Stage.SPEC_REVIEW,
        Stage.CODE_REVIEW,
        Stage.CODE_REVIEW,
        Stage.UX_REVIEW,
        Stage.UX_REVIEW,
    ]
    assert dispatcher.labels == [
        "implement:implementer",
        "spec_review:spec-reviewer",
        "code_review:platform-reviewer",
        "implement:implementer",
        "code_review:platform-reviewer",
        "ux_review:ux-reviewer",
        "implement:implementer",
        "ux_review:ux-reviewer",
    ]
    assert [record.resume_stage for record in task.rework_log] == [
        Stage.CODE_REVIEW,
        Stage.UX_REVIEW,
    ]


def test_implementer_receives_full_text_and_accumulated_issues() -> None:
    dispatcher = ScriptedDispatcher(
        {
            "platform-reviewer": ["Important: missing accessibility label\nREJECTED"],
            "ux-reviewer": ["Important: no undo\nREJECTED"],
        }
    )
    orchestrator = _orchestrator(dispatcher)
    task = orchestrator.load_task(_descriptor())

    asyncio.run(orchestrator.process_task(task))

    implementer_calls = dispatcher.calls_for("implementer")
    assert implementer_calls[0] == []
    assert implementer_calls[1] == [Issue(Severity.IMPORTANT, "missing accessibility label")]
    assert implementer_calls[2] == [
        Issue(Severity.IMPORTANT, "missing accessibility label"),
        Issue(Severity.IMPORTANT, "no undo"),
    ]
    assert all(text == "Build task-1" for _, text, _ in dispatcher.calls)


def test_backend_task_never_reaches_ux_review() -> None:
    dispatcher = ScriptedDispatcher()
    orchestrator = _orchestrator(dispatcher)
    task = orchestrator.load_task(_descriptor(content_type="backend"))

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.COMPLETE
    assert task.visited_stages() == [Stage.IMPLEMENT, Stage.SPEC_REVIEW, Stage.CODE_REVIEW]
    assert task.history[-1].role == "backend-reviewer"
    assert not any(label.startswith("ux_review") for label in dispatcher.labels)


def test_unparseable_review_returns_task_to_implementer() -> None:
    dispatcher = ScriptedDispatcher({"platform-reviewer": ["Hmm, I am not sure about this."]})
    orchestrator = _orchestrator(dispatcher)
    task = orchestrator.load_task(_descriptor())

    for _ in range(3):
        asyncio.run(orchestrator.step(task))

    verdict = task.history[-1]
    assert verdict.stage is Stage.CODE_REVIEW
    assert verdict.outcome is Outcome.REJECTED
    assert verdict.failure is FailureKind.PARSE_ERROR
    assert verdict.issues == [Issue(Severity.IMPORTANT, UNPARSEABLE_ISSUE)]
    assert verdict.raw_response == "Hmm, I am not sure about this."
    assert task.state is TaskState.IMPLEMENTING
    assert task.in_rework
    assert task.gates[task.gate_index].stage is Stage.CODE_REVIEW


def test_three_rejections_at_one_stage_block_the_task(tmp_path: Path) -> None:
    rejection = "Critical: data loss on save\nREJECTED"
    dispatcher = ScriptedDispatcher({"spec-reviewer": [rejection] * 5})
    store = StateStore(tmp_path / "state")
    orchestrator = _orchestrator(dispatcher, cap=3, state_store=store)
    task = orchestrator.load_task(_descriptor())

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.BLOCKED
    assert task.blocked_stage is Stage.SPEC_REVIEW
    assert task.stage is Stage.SPEC_REVIEW
    assert len(dispatcher.calls_for("spec-reviewer")) == 3
    assert len(dispatcher.calls_for("implementer")) == 3
    assert task.rejection_count() == 3
    assert store.get_task("task-1")["status"] == "blocked"
    escalations = store.get_escalations()
    assert escalations[0]["failure"] == "rejection_loop"
    assert escalations[0]["issues"] == [{"severity": "critical", "text": "data loss on save"}] * 3


def test_approval_resets_rejection_counter() -> None:
    rejection = "Important: flaky test\nREJECTED"
    dispatcher = ScriptedDispatcher(
        {
            "spec-reviewer": [rejection, rejection, "APPROVED"],
            "backend-reviewer": [rejection, rejection, "APPROVED"],
        }
    )
    orchestrator = _orchestrator(dispatcher, cap=3)
    task = orchestrator.load_task(_descriptor(content_type="backend"))

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.COMPLETE
    assert task.rejection_count() == 4


def test_reapplying_recorded_verdicts_to_complete_task_is_a_no_op() -> None:
    orchestrator = _orchestrator(ScriptedDispatcher())
    task = orchestrator.load_task(_descriptor())
    asyncio.run(orchestrator.process_task(task))
    recorded = list(task.history)

    for verdict in recorded:
        assert orchestrator.apply_verdict(task, verdict) is False

    assert task.status is TaskStatus.COMPLETE
    assert task.history == recorded


def test_mixed_task_needs_both_code_reviewers_in_sequence() -> None:
    dispatcher = ScriptedDispatcher(
        {"backend-reviewer": ["Important: missing index\nREJECTED", "APPROVED"]}
    )
    orchestrator = _orchestrator(dispatcher)
    task = orchestrator.load_task(_descriptor(content_type="mixed"))

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.COMPLETE
    assert dispatcher.labels == [
        "implement:implementer",
        "spec_review:spec-reviewer",
        "code_review:platform-reviewer",
        "code_review:backend-reviewer",
        "implement:implementer",
        "code_review:backend-reviewer",
        "ux_review:ux-reviewer",
    ]


def test_dispatch_timeout_counts_as_rejection() -> None:
    dispatcher = ScriptedDispatcher({"spec-reviewer": [5.0]})
    orchestrator = _orchestrator(dispatcher, dispatch_timeout_seconds=0.05)
    task = orchestrator.load_task(_descriptor(content_type="backend"))

    asyncio.run(orchestrator.step(task))
    asyncio.run(orchestrator.step(task))

    verdict = task.history[-1]
    assert verdict.failure is FailureKind.DISPATCH_FAILURE
    assert verdict.outcome is Outcome.REJECTED
    assert "did not respond" in verdict.issues[0].text
    assert task.state is TaskState.IMPLEMENTING


def test_implementer_failures_are_recorded_and_retried() -> None:
    dispatcher = ScriptedDispatcher(
        {"implementer": [BackendExecutionError("exit 1", backend="claude"), "   "]}
    )
    orchestrator = _orchestrator(dispatcher)
    task = orchestrator.load_task(_descriptor(content_type="backend"))

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.COMPLETE
    assert [(v.stage, v.outcome) for v in task.history] == [
        (Stage.IMPLEMENT, Outcome.REJECTED),
        (Stage.IMPLEMENT, Outcome.REJECTED),
        (Stage.IMPLEMENT, Outcome.APPROVED),
        (Stage.SPEC_REVIEW, Outcome.APPROVED),
        (Stage.CODE_REVIEW, Outcome.APPROVED),
    ]
    assert task.history[0].failure is FailureKind.DISPATCH_FAILURE
    assert "exit 1" in task.history[0].issues[0].text
    assert "empty response" in task.history[1].issues[0].text


def test_unreachable_implementer_blocks_at_implement() -> None:
    failure = BackendExecutionError("offline", backend="codex")
    dispatcher = ScriptedDispatcher({"implementer": [failure, failure]})
    orchestrator = _orchestrator(dispatcher, cap=2)
    task = orchestrator.load_task(_descriptor())

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.BLOCKED
    assert task.blocked_stage is Stage.IMPLEMENT
    assert dispatcher.labels == ["implement:implementer", "implement:implementer"]


def test_manual_override_from_notifier_advances_past_blocked_gate() -> None:
    dispatcher = ScriptedDispatcher({"backend-reviewer": ["Critical: breaks API\nREJECTED"]})
    orchestrator = _orchestrator(
        dispatcher,
        cap=1,
        notifier=StaticNotifier(ResolutionDirective.MANUAL_OVERRIDE_APPROVE),
    )
    task = orchestrator.load_task(_descriptor(content_type="backend"))

    asyncio.run(orchestrator.process_task(task))

    assert task.status is TaskStatus.COMPLETE
    assert task.history[-1].stage is Stage.CODE_REVIEW
    assert task.history[-1].outcome is Outcome.APPROVED
    assert task.history[-1].role == "backend-reviewer"
    assert [r.directive for r in task.resolutions] == [
        ResolutionDirective.MANUAL_OVERRIDE_APPROVE
    ]


def test_retry_with_override_resumes_deferred_task() -> None:
    dispatcher = ScriptedDispatcher(
        {"backend-reviewer": ["Critical: breaks API\nREJECTED", "APPROVED"]}
    )
    orchestrator = _orchestrator(dispatcher, cap=1)
    task = orchestrator.load_task(_descriptor(content_type="backend"))
    asyncio.run(orchestrator.process_task(task))
    assert task.status is TaskStatus.BLOCKED

    orchestrator.resolve(task, ResolutionDirective.RETRY_WITH_OVERRIDE, note="API change agreed")

    assert task.state is TaskState.IMPLEMENTING
    assert task.blocked_stage is None
    asyncio.run(orchestrator.process_task(task))
    assert task.status is TaskStatus.COMPLETE
    assert dispatcher.calls_for("implementer")[-1] == [
        Issue(Severity.CRITICAL, "breaks API")
    ]
    assert task.resolutions[0].note == "API change agreed"
    assert task.resolutions[0].history_length == 3


def test_abandon_keeps_task_blocked() -> None:
    dispatcher = ScriptedDispatcher({"spec-reviewer": ["Important: wrong scope\nREJECTED"]})
    orchestrator = _orchestrator(dispatcher, cap=1)
    task = orchestrator.load_task(_descriptor())
    asyncio.run(orchestrator.process_task(task))

    orchestrator.resolve(task, ResolutionDirective.ABANDON)

    assert task.status is TaskStatus.BLOCKED
    assert task.issue_history() == [Issue(Severity.IMPORTANT, "wrong scope")]
    assert asyncio.run(orchestrator.step(task)) is False


def test_resolve_requires_a_blocked_task() -> None:
    orchestrator = _orchestrator(ScriptedDispatcher())
    task = orchestrator.load_task(_descriptor())

    with pytest.raises(InvalidTransitionError, match="not blocked"):
        orchestrator.resolve(task, ResolutionDirective.ABANDON)


def test_verdict_for_another_stage_is_refused() -> None:
    orchestrator = _orchestrator(ScriptedDispatcher())
    task = orchestrator.load_task(_descriptor())

    with pytest.raises(InvalidTransitionError, match="awaits 'implement'"):
        orchestrator.apply_verdict(task, Verdict(Stage.CODE_REVIEW, Outcome.APPROVED))

    assert task.history == []
    assert task.state is TaskState.PENDING


def test_verdict_from_the_wrong_reviewer_is_refused() -> None:
    orchestrator = _orchestrator(ScriptedDispatcher())
    task = orchestrator.load_task(_descriptor(content_type="mixed"))
    orchestrator.apply_verdict(task, Verdict(Stage.IMPLEMENT, Outcome.APPROVED))
    orchestrator.apply_verdict(task, Verdict(Stage.SPEC_REVIEW, Outcome.APPROVED))

    with pytest.raises(InvalidTransitionError, match="platform-reviewer"):
        orchestrator.apply_verdict(
            task, Verdict(Stage.CODE_REVIEW, Outcome.APPROVED, role="backend-reviewer")
        )


def test_transition_table_forbids_leaving_complete() -> None:
    with pytest.raises(InvalidTransitionError):
        validate_transition(TaskState.COMPLETE, TaskState.IMPLEMENTING)
    with pytest.raises(InvalidTransitionError):
        validate_transition(TaskState.PENDING, TaskState.AWAITING_CODE_REVIEW)


def test_unknown_content_type_fails_at_load() -> None:
    orchestrator = _orchestrator(ScriptedDispatcher())

    with pytest.raises(PolicyError):
        orchestrator.load_task(_descriptor(content_type="firmware"))


def test_run_processes_tasks_in_order_and_persists_summary(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    dispatcher = ScriptedDispatcher({"spec-reviewer": ["APPROVED", "Critical: wrong\nREJECTED"]})
    store = StateStore(tmp_path / "state")
    orchestrator = _orchestrator(dispatcher, cap=1, state_store=store, event_hook=events.append)

    summary = asyncio.run(
        orchestrator.run(
            [_descriptor("first", "backend"), _descriptor("second", "backend")]
        )
    )

    assert summary.total_tasks == 2
    assert summary.completed == ["first"]
    assert summary.blocked == ["second"]
    assert dispatcher.labels.index("code_review:backend-reviewer") < dispatcher.labels.index(
        "spec_review:spec-reviewer", 2
    )
    assert store.get_runs()[summary.run_id]["status"] == "finished"
    event_names = [event["event"] for event in events]
    assert event_names[0] == "run_start"
    assert "task_complete" in event_names
    assert "task_blocked" in event_names
    assert event_names[-1] == "run_complete"


def test_persisted_tasks_are_resumed_not_restarted(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    first = _orchestrator(
        ScriptedDispatcher({"spec-reviewer": ["Critical: wrong\nREJECTED"]}),
        cap=1,
        state_store=store,
    )
    asyncio.run(first.run([_descriptor("task-1", "backend")]))

    dispatcher = ScriptedDispatcher()
    second = _orchestrator(dispatcher, cap=1, state_store=store)
    summary = asyncio.run(second.run([_descriptor("task-1", "backend")]))

    assert summary.blocked == ["task-1"]
    assert dispatcher.calls == []
    assert second.escalation.rejection_count("task-1", Stage.SPEC_REVIEW) == 1


def test_changed_plan_text_does_not_overwrite_stored_history(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    first = _orchestrator(
        ScriptedDispatcher({"spec-reviewer": ["Critical: wrong\nREJECTED"]}),
        cap=1,
        state_store=store,
    )
    asyncio.run(first.run([_descriptor("task-1", "backend")]))

    dispatcher = ScriptedDispatcher()
    second = _orchestrator(dispatcher, cap=1, state_store=store)
    rewritten = TaskDescriptor(id="task-1", text="Something else entirely", content_type="backend")

    with pytest.raises(TaskConflictError, match="task-1"):
        second.load_task(rewritten)

    stored = store.get_task("task-1")
    assert stored is not None
    assert stored["description"] == "Build task-1"
    assert len(stored["history"]) == 2
    assert dispatcher.calls == []
