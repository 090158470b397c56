from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from reviewgate.backends.cli import BackendEventHook, CliAgentBackend


class CodexBackend(CliAgentBackend):
    """``codex exec --json``; the role prompt travels as the ``instructions`` override."""

    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
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
        instructions = json.dumps(system_prompt, ensure_ascii=False)
        command = [self.binary, "exec", "--json", "-c", f"instructions={instructions}"]
        model = self.requested_model(context)
        if model is not None:
            command += ["-m", model]
        return command + [self.render_prompt(user_prompt, context, tools)]
