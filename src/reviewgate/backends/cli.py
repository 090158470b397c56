from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from reviewgate.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

BackendEventHook = Callable[[dict[str, Any]], None]


class JsonLineAssembler:
    """Reassembles JSON events that a CLI split across several stdout lines.

    ``feed`` returns a decoded object, a plain text line, or ``None`` while a
    partial object is still being buffered.
    """

    def __init__(self) -> None:
        self.pending = ""

    @staticmethod
    def _unbalanced(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, line: str) -> dict[str, Any] | str | None:
        line = line.strip()
        if not line:
            return None
        candidate = self.pending + line
        try:
            decoded = json.loads(candidate)
        except json.JSONDecodeError:
            if self._unbalanced(candidate):
                self.pending = candidate
                return None
            self.pending = ""
            return line
        self.pending = ""
        return decoded if isinstance(decoded, dict) else None

    def flush(self) -> str:
        leftover, self.pending = self.pending, ""
        return leftover


class CliAgentBackend(AgentBackend):
    """Runs an agent CLI as a subprocess and streams text from its JSON events.

    Each call spawns a fresh process, so nothing carries over between calls.
    """

    name = "cli"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"backend": self.name, **payload})

    @staticmethod
    def render_prompt(
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> str:
        """Fold the stage context and tool allowance into the prompt text itself."""
        sections = [user_prompt]
        if context:
            sections.extend(["Context JSON:", json.dumps(context, ensure_ascii=False, indent=2)])
        if tools:
            sections.extend(["Allowed tools:", json.dumps(tools, ensure_ascii=False)])
        return "\n\n".join(sections)

    @staticmethod
    def requested_model(context: dict[str, Any]) -> str | None:
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            return model.strip()
        return None

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        raise NotImplementedError

    @staticmethod
    def extract_content(event: dict[str, Any]) -> str:
        """Pull the text out of one stream event, whatever shape the CLI used."""
        for key in ("content", "delta", "message"):
            value = event.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, list):
                return "".join(
                    item["text"]
                    for item in value
                    if isinstance(item, dict) and isinstance(item.get("text"), str)
                )
            if isinstance(value, dict):
                return CliAgentBackend.extract_content(value)
        return ""

    async def _spawn(self, command: list[str]) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc
        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} process has no stdout pipe", backend=self.name, retriable=False
            )
        return process

    async def _finish(self, process: asyncio.subprocess.Process) -> None:
        exit_code = await process.wait()
        stderr = b""
        if process.stderr is not None:
            stderr = await process.stderr.read()
        detail = stderr.decode("utf-8", errors="replace").strip()
        self._emit({"event": "cli_exit", "exit_code": exit_code, "stderr": detail[:400]})
        if exit_code != 0:
            raise BackendExecutionError(
                f"{self.name} exited with code {exit_code}: {detail}",
                backend=self.name,
                exit_code=exit_code,
                retriable=True,
            )

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Kill a process abandoned mid-stream, e.g. when a timeout cancels the read."""
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        self._emit({"event": "cli_killed", "pid": process.pid})

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context, tools)
        self._emit(
            {
                "event": "cli_start",
                "command": command[:3],
                "tool_mode": bool(tools),
                "model": context.get("model"),
            }
        )
        process = await self._spawn(command)
        assert process.stdout is not None

        lines = JsonLineAssembler()
        try:
            async for raw_line in process.stdout:
                decoded = lines.feed(raw_line.decode("utf-8", errors="replace"))
                if isinstance(decoded, dict):
                    text = self.extract_content(decoded)
                    if text:
                        yield text
                elif decoded:
                    self._emit({"event": "cli_plain_line", "line": decoded[:200]})
                    yield decoded

            leftover = lines.flush()
            if leftover:
                yield leftover
            await self._finish(process)
        finally:
            await self._reap(process)
