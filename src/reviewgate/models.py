from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Stage(StrEnum):
    IMPLEMENT = "implement"
    SPEC_REVIEW = "spec_review"
    CODE_REVIEW = "code_review"
    UX_REVIEW = "ux_review"
    COMPLETE = "complete"


class Outcome(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected_with_issues"


class Severity(StrEnum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    SUGGESTION = "suggestion"

    @property
    def blocking(self) -> bool:
        return self is not Severity.SUGGESTION


class TaskStatus(StrEnum):
    ACTIVE = "active"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class TaskState(StrEnum):
    PENDING = "pending"
    IMPLEMENTING = "implementing"
    AWAITING_SPEC_REVIEW = "awaiting_spec_review"
    AWAITING_CODE_REVIEW = "awaiting_code_review"
    AWAITING_UX_REVIEW = "awaiting_ux_review"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class FailureKind(StrEnum):
    PARSE_ERROR = "parse_error"
    DISPATCH_FAILURE = "dispatch_failure"
    REJECTION_LOOP = "rejection_loop"


class ResolutionDirective(StrEnum):
    ABANDON = "abandon"
    RETRY_WITH_OVERRIDE = "retry_with_override"
    MANUAL_OVERRIDE_APPROVE = "manual_override_approve"


GATE_STATES: dict[Stage, TaskState] = {
    Stage.IMPLEMENT: TaskState.IMPLEMENTING,
    Stage.SPEC_REVIEW: TaskState.AWAITING_SPEC_REVIEW,
    Stage.CODE_REVIEW: TaskState.AWAITING_CODE_REVIEW,
    Stage.UX_REVIEW: TaskState.AWAITING_UX_REVIEW,
    Stage.COMPLETE: TaskState.COMPLETE,
}


@dataclass(slots=True, frozen=True)
class Issue:
    severity: Severity
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"severity": self.severity.value, "text": self.text}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Issue:
        return cls(severity=Severity(payload["severity"]), text=str(payload["text"]))


@dataclass(slots=True, frozen=True)
class Gate:
    """One checkpoint in a task's resolved gate list."""

    stage: Stage
    role: str

    @property
    def label(self) -> str:
        return f"{self.stage.value}:{self.role}"

    def to_dict(self) -> dict[str, str]:
        return {"stage": self.stage.value, "role": self.role}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Gate:
        return cls(stage=Stage(payload["stage"]), role=str(payload["role"]))


@dataclass(slots=True)
class Verdict:
    stage: Stage
    outcome: Outcome
    issues: list[Issue] = field(default_factory=list)
    role: str = ""
    failure: FailureKind | None = None
    raw_response: str = ""
    recorded_at: str = field(default_factory=utcnow_iso)

    @property
    def approved(self) -> bool:
        return self.outcome is Outcome.APPROVED

    @property
    def blocking_issues(self) -> list[Issue]:
        return [issue for issue in self.issues if issue.severity.blocking]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "outcome": self.outcome.value,
            "issues": [issue.to_dict() for issue in self.issues],
            "role": self.role,
            "failure": self.failure.value if self.failure else None,
            "raw_response": self.raw_response,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Verdict:
        failure = payload.get("failure")
        return cls(
            stage=Stage(payload["stage"]),
            outcome=Outcome(payload["outcome"]),
            issues=[Issue.from_dict(item) for item in payload.get("issues", [])],
            role=str(payload.get("role", "")),
            failure=FailureKind(failure) if failure else None,
            raw_response=str(payload.get("raw_response", "")),
            recorded_at=str(payload.get("recorded_at") or utcnow_iso()),
        )


@dataclass(slots=True, frozen=True)
class TaskDescriptor:
    id: str
    text: str
    content_type: str


@dataclass(slots=True)
class ReworkRecord:
    resume_stage: Stage
    role: str
    response_excerpt: str
    recorded_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resume_stage": self.resume_stage.value,
            "role": self.role,
            "response_excerpt": self.response_excerpt,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ReworkRecord:
        return cls(
            resume_stage=Stage(payload["resume_stage"]),
            role=str(payload.get("role", "")),
            response_excerpt=str(payload.get("response_excerpt", "")),
            recorded_at=str(payload.get("recorded_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class Resolution:
    directive: ResolutionDirective
    stage: Stage
    note: str = ""
    history_length: int = 0
    decided_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "directive": self.directive.value,
            "stage": self.stage.value,
            "note": self.note,
            "history_length": self.history_length,
            "decided_at": self.decided_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Resolution:
        return cls(
            directive=ResolutionDirective(payload["directive"]),
            stage=Stage(payload["stage"]),
            note=str(payload.get("note", "")),
            history_length=int(payload.get("history_length", 0)),
            decided_at=str(payload.get("decided_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class Task:
    """A unit of work moving through its gate list.

    ``gate_index`` points at the gate the task is waiting on. While the task is
    implementing after a rejection it keeps pointing at the rejected gate, so
    the rework returns to that gate once the implementer finishes.
    """

    id: str
    description: str
    content_type: str
    gates: list[Gate]
    state: TaskState = TaskState.PENDING
    gate_index: int = 0
    history: list[Verdict] = field(default_factory=list)
    rework_log: list[ReworkRecord] = field(default_factory=list)
    resolutions: list[Resolution] = field(default_factory=list)
    blocked_stage: Stage | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def status(self) -> TaskStatus:
        if self.state is TaskState.COMPLETE:
            return TaskStatus.COMPLETE
        if self.state is TaskState.BLOCKED:
            return TaskStatus.BLOCKED
        return TaskStatus.ACTIVE

    @property
    def stage(self) -> Stage:
        if self.state is TaskState.COMPLETE:
            return Stage.COMPLETE
        if self.state is TaskState.BLOCKED and self.blocked_stage is not None:
            return self.blocked_stage
        if self.state in {TaskState.PENDING, TaskState.IMPLEMENTING}:
            return Stage.IMPLEMENT
        return self.gates[self.gate_index].stage

    @property
    def current_gate(self) -> Gate | None:
        if self.status is not TaskStatus.ACTIVE:
            return None
        if self.state in {TaskState.PENDING, TaskState.IMPLEMENTING}:
            return self.gates[0]
        return self.gates[self.gate_index]

    @property
    def in_rework(self) -> bool:
        return self.state is TaskState.IMPLEMENTING and self.gate_index > 0

    def record(self, verdict: Verdict) -> None:
        self.history.append(verdict)
        self.updated_at = utcnow_iso()

    def issue_history(self) -> list[Issue]:
        issues: list[Issue] = []
        for verdict in self.history:
            if not verdict.approved:
                issues.extend(verdict.issues)
        return issues

    def visited_stages(self) -> list[Stage]:
        return [verdict.stage for verdict in self.history]

    def rejection_count(self) -> int:
        return sum(1 for verdict in self.history if not verdict.approved)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "content_type": self.content_type,
            "gates": [gate.to_dict() for gate in self.gates],
            "state": self.state.value,
            "status": self.status.value,
            "stage": self.stage.value,
            "gate_index": self.gate_index,
            "history": [verdict.to_dict() for verdict in self.history],
            "rework_log": [record.to_dict() for record in self.rework_log],
            "resolutions": [resolution.to_dict() for resolution in self.resolutions],
            "blocked_stage": self.blocked_stage.value if self.blocked_stage else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        blocked_stage = payload.get("blocked_stage")
        return cls(
            id=str(payload["id"]),
            description=str(payload["description"]),
            content_type=str(payload["content_type"]),
            gates=[Gate.from_dict(item) for item in payload.get("gates", [])],
            state=TaskState(payload.get("state", TaskState.PENDING.value)),
            gate_index=int(payload.get("gate_index", 0)),
            history=[Verdict.from_dict(item) for item in payload.get("history", [])],
            rework_log=[ReworkRecord.from_dict(item) for item in payload.get("rework_log", [])],
            resolutions=[Resolution.from_dict(item) for item in payload.get("resolutions", [])],
            blocked_stage=Stage(blocked_stage) if blocked_stage else None,
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )
