from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from reviewgate.backends.base import BackendExecutionError
from reviewgate.models import Gate, Issue
from reviewgate.specialists.base import SpecialistAgent


class DispatchFailure(RuntimeError):
    """Raised when an implementer or reviewer could not produce a response."""

    def __init__(self, message: str, *, gate: Gate | None = None) -> None:
        super().__init__(message)
        self.gate = gate


class Dispatcher(Protocol):
    async def dispatch(self, gate: Gate, task_text: str, issue_history: list[Issue]) -> str:
        """Send one stateless request for ``gate`` and return the raw response text."""


class SpecialistDispatcher:
    """Routes each gate to the specialist registered for its role."""

    def __init__(self, specialists: Mapping[str, SpecialistAgent]) -> None:
        self.specialists = dict(specialists)

    async def dispatch(self, gate: Gate, task_text: str, issue_history: list[Issue]) -> str:
        specialist = self.specialists.get(gate.role)
        if specialist is None:
            raise DispatchFailure(f"No specialist registered for role '{gate.role}'.", gate=gate)
        try:
            response = await specialist.run(task_text, list(issue_history), stage=gate.stage)
        except BackendExecutionError as exc:
            raise DispatchFailure(f"{gate.role} failed: {exc}", gate=gate) from exc
        return response.content
