from __future__ import annotations

import logging
from typing import Protocol

from reviewgate.models import Issue, ResolutionDirective, Stage, Task

logger = logging.getLogger(__name__)


class EscalationNotifier(Protocol):
    def notify(
        self, task_id: str, stage: Stage, issue_history: list[Issue]
    ) -> ResolutionDirective | None:
        """Return a directive for a blocked task, or None to leave it blocked."""


class DeferredNotifier:
    """Leaves blocked tasks blocked until someone resolves them explicitly."""

    def notify(
        self, task_id: str, stage: Stage, issue_history: list[Issue]
    ) -> ResolutionDirective | None:
        logger.warning(
            "Task %s blocked at %s with %d recorded issue(s); awaiting resolution.",
            task_id,
            stage.value,
            len(issue_history),
        )
        return None


class StaticNotifier:
    def __init__(self, directive: ResolutionDirective) -> None:
        self.directive = directive

    def notify(
        self, task_id: str, stage: Stage, issue_history: list[Issue]
    ) -> ResolutionDirective | None:
        _ = issue_history
        logger.info("Task %s blocked at %s; applying %s.", task_id, stage.value, self.directive)
        return self.directive


class EscalationHandler:
    """Counts rejections per (task, stage) and reports when the cap is hit."""

    def __init__(
        self,
        max_rejections: int,
        notifier: EscalationNotifier | None = None,
    ) -> None:
        if isinstance(max_rejections, bool) or not isinstance(max_rejections, int):
            raise ValueError("max_rejections must be an integer.")
        if max_rejections < 1:
            raise ValueError("max_rejections must be a positive integer.")
        self.max_rejections = max_rejections
        self.notifier: EscalationNotifier = notifier or DeferredNotifier()
        self._counts: dict[tuple[str, Stage], int] = {}

    def rejection_count(self, task_id: str, stage: Stage) -> int:
        return self._counts.get((task_id, stage), 0)

    def record_rejection(self, task_id: str, stage: Stage) -> int:
        count = self.rejection_count(task_id, stage) + 1
        self._counts[(task_id, stage)] = count
        return count

    def record_approval(self, task_id: str, stage: Stage) -> None:
        self.reset(task_id, stage)

    def reset(self, task_id: str, stage: Stage) -> None:
        self._counts.pop((task_id, stage), None)

    def cap_exceeded(self, task_id: str, stage: Stage) -> bool:
        return self.rejection_count(task_id, stage) >= self.max_rejections

    def replay(self, task: Task) -> None:
        """Rebuild the counters for ``task`` from its recorded history."""
        for key in [key for key in self._counts if key[0] == task.id]:
            del self._counts[key]
        resets: dict[int, list[Stage]] = {}
        for resolution in task.resolutions:
            if resolution.directive is ResolutionDirective.RETRY_WITH_OVERRIDE:
                resets.setdefault(resolution.history_length, []).append(resolution.stage)

        for index, verdict in enumerate(task.history):
            for stage in resets.get(index, []):
                self.reset(task.id, stage)
            if verdict.stage is not Stage.IMPLEMENT:
                # A review verdict means the implementer finished its rework.
                self.reset(task.id, Stage.IMPLEMENT)
            if verdict.approved:
                self.record_approval(task.id, verdict.stage)
            else:
                self.record_rejection(task.id, verdict.stage)
        for stage in resets.get(len(task.history), []):
            self.reset(task.id, stage)

    def escalate(self, task: Task) -> ResolutionDirective | None:
        stage = task.blocked_stage or task.stage
        return self.notifier.notify(task.id, stage, task.issue_history())
