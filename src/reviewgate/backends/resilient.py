from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from reviewgate.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from reviewgate.backends.cli import BackendEventHook

FAILURE_SUMMARY_LIMIT = 6


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0

    def delay_before(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(slots=True)
class BackendRoute:
    name: str
    backend: AgentBackend
    is_fallback: bool = False


class ResilientBackend(AgentBackend):
    """Primary backend first, fallback second, each retried with exponential backoff.

    A reply is buffered in full before it is streamed on, so a backend that dies
    halfway never leaks a partial answer into a review verdict.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.routes = [BackendRoute(primary_name, primary_backend)]
        if fallback_name != primary_name:
            self.routes.append(BackendRoute(fallback_name, fallback_backend, is_fallback=True))
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, route: BackendRoute, **fields: Any) -> None:
        if self.event_hook is not None:
            self.event_hook({"event": event, "backend": route.name, **fields})

    async def _attempt(
        self,
        route: BackendRoute,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(
                route.backend.collect(system_prompt, user_prompt, context, tools),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"{route.name} timed out after {timeout:.1f}s",
                backend=route.name,
                retriable=True,
            ) from exc

    async def _run_route(
        self,
        route: BackendRoute,
        failures: list[str],
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str] | None:
        for attempt in range(self.retry_policy.max_retries + 1):
            delay = self.retry_policy.delay_before(attempt)
            if attempt:
                self._emit("backend_retry", route, attempt=attempt, delay_seconds=delay)
                await asyncio.sleep(delay)
            try:
                chunks = await self._attempt(route, system_prompt, user_prompt, context, tools)
            except BackendExecutionError as exc:
                failures.append(f"{route.name}[{attempt}]: {exc}")
                self._emit(
                    "backend_attempt_failed",
                    route,
                    attempt=attempt,
                    error=str(exc),
                    retriable=exc.retriable,
                )
                if exc.retriable:
                    continue
                return None
            if route.is_fallback:
                self._emit("backend_fallback_success", route, attempt=attempt)
            return chunks
        return None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        failures: list[str] = []
        for route in self.routes:
            if route.is_fallback:
                self._emit("backend_failover_start", route)
            chunks = await self._run_route(
                route, failures, system_prompt, user_prompt, context, tools
            )
            if chunks is None:
                continue
            for chunk in chunks:
                yield chunk
            return

        raise BackendExecutionError(
            "All backend attempts failed. " + "; ".join(failures[-FAILURE_SUMMARY_LIMIT:]),
            retriable=False,
        )
