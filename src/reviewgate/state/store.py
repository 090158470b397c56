from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from reviewgate.models import utcnow_iso

EVENT_WINDOW = 200


class StateError(RuntimeError):
    """Raised when persisted-state operations fail."""


class StateStore:
    """Schema-versioned JSON documents, one file per namespace."""

    NAMESPACES = {"tasks", "runs", "escalations", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"State file is corrupt: {path}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        temp_path.replace(path)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_raw_json(namespace)
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            return raw
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": default_value if raw is None else raw,
        }

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace)
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: StateError | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 0)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def get_tasks(self) -> list[dict[str, Any]]:
        payload = self.get_json("tasks", default={"tasks": []})
        tasks = payload.get("tasks", []) if isinstance(payload, dict) else []
        return tasks if isinstance(tasks, list) else []

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        for item in self.get_tasks():
            if isinstance(item, dict) and item.get("id") == task_id:
                return item
        return None

    def upsert_task(self, task: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"tasks": []}
            tasks = [item for item in result.get("tasks", []) if isinstance(item, dict)]
            for index, item in enumerate(tasks):
                if item.get("id") == task["id"]:
                    tasks[index] = task
                    break
            else:
                tasks.append(task)
            result["tasks"] = tasks
            return result

        self.update_json("tasks", _updater, default={"tasks": []})

    def upsert_run(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            run = runs.get(run_id, {})
            if not isinstance(run, dict):
                run = {}
            run.update(updates)
            runs[run_id] = run
            return runs

        self.update_json("runs", _updater, default={})

    def get_runs(self) -> dict[str, Any]:
        runs = self.get_json("runs", default={})
        return runs if isinstance(runs, dict) else {}

    def add_escalation(self, record: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"escalations": []}
            result.setdefault("escalations", [])
            result["escalations"].append(record)
            return result

        self.update_json("escalations", _updater, default={"escalations": []})

    def get_escalations(self) -> list[dict[str, Any]]:
        payload = self.get_json("escalations", default={"escalations": []})
        items = payload.get("escalations", []) if isinstance(payload, dict) else []
        return items if isinstance(items, list) else []

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, event: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("events", [])
            if not isinstance(events, list):
                events = []
            events.append({**event, "at": utcnow_iso()})
            metrics["events"] = events[-EVENT_WINDOW:]
            counters = metrics.get("event_counts", {})
            if not isinstance(counters, dict):
                counters = {}
            name = str(event.get("event", "unknown"))
            counters[name] = int(counters.get(name, 0)) + 1
            metrics["event_counts"] = counters
            return metrics

        self.update_json("metrics", _updater, default={})
