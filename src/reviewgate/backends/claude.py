from __future__ import annotations

from pathlib import Path
from typing import Any

from reviewgate.backends.cli import BackendEventHook, CliAgentBackend


class ClaudeCodeBackend(CliAgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory=working_directory, event_hook=event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        prompt = self.render_prompt(user_prompt, context, tools)
        command = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command += ["--append-system-prompt", system_prompt]
        model = self.requested_model(context)
        if model is not None:
            command += ["--model", model]
        return command
