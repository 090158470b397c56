from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from reviewgate.backends.base import AgentBackend
from reviewgate.models import Issue, Stage

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}

REVIEW_RESPONSE_CONTRACT = """
Report findings under the headings Critical, Important and Suggestions,
one bullet per finding. Write "None" under a heading with no findings.
End with a final line reading exactly APPROVED when nothing Critical or
Important remains, or REJECTED otherwise.
""".strip()


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    """A stateless role: a system prompt plus one backend call per request."""

    role: str = "specialist"
    fallback_prompt: str = "You are a software specialist."
    response_contract: str = ""
    allowed_tools: tuple[str, ...] = ("read_file", "search")

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        role: str | None = None,
        prompt_dir: Path | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        if role:
            self.role = role
        self.system_prompt = self._load_system_prompt(prompt_dir)

    def _load_system_prompt(self, prompt_dir: Path | None) -> str:
        if prompt_dir is None:
            return self.fallback_prompt.strip()
        try:
            content = (prompt_dir / f"{self.role}.md").read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return self.fallback_prompt.strip()
        return content or self.fallback_prompt.strip()

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise RuntimeError(
                "Tool policy rejected unknown tools for specialist run: "
                + ", ".join(unknown)
            )
        return normalized

    def render_instruction(self, stage: Stage, task_text: str, issue_history: list[Issue]) -> str:
        parts = [f"Stage: {stage.value}", "", "## Task", task_text.strip()]
        if issue_history:
            parts.extend(["", "## Review issues raised so far"])
            parts.extend(f"- [{issue.severity.value}] {issue.text}" for issue in issue_history)
        if self.response_contract:
            parts.extend(["", "## Response format", self.response_contract])
        return "\n".join(parts)

    async def run(
        self,
        task_text: str,
        issue_history: list[Issue],
        *,
        stage: Stage,
    ) -> SpecialistResponse:
        context: dict[str, Any] = {"stage": stage.value, "role": self.role}
        if self.model:
            context["model"] = self.model
        tools = self._normalize_allowed_tools(list(self.allowed_tools))
        instruction = self.render_instruction(stage, task_text, issue_history)

        chunks = await self.backend.collect(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=context,
            tools=tools,
        )
        return SpecialistResponse(
            role=self.role,
            content="".join(chunks).strip(),
            metadata={
                "stage": stage.value,
                "issue_count": len(issue_history),
                "allowed_tools": list(tools or []),
            },
        )


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    fallback_prompt = """
You are an independent reviewer.
Judge the implementation of the task against the task text and the issues
already raised. Do not modify code.
""".strip()
    response_contract = REVIEW_RESPONSE_CONTRACT
