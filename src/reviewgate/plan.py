from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from reviewgate.models import TaskDescriptor

REQUIRED_FIELDS = ("id", "text", "content_type")


class PlanError(ValueError):
    """Raised when a plan file cannot be turned into task descriptors."""


def parse_plan_entries(entries: Any) -> list[TaskDescriptor]:
    if isinstance(entries, dict):
        entries = entries.get("tasks")
    if not isinstance(entries, list):
        raise PlanError("Plan must contain a list of tasks.")

    descriptors: list[TaskDescriptor] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise PlanError(f"Task #{index} is not a table.")
        values: dict[str, str] = {}
        for name in REQUIRED_FIELDS:
            raw = entry.get(name)
            # Plans often carry the task body under "description".
            if raw is None and name == "text":
                raw = entry.get("description")
            value = str(raw).strip() if raw is not None else ""
            if not value:
                raise PlanError(f"Task #{index} is missing '{name}'.")
            values[name] = value
        if values["id"] in seen:
            raise PlanError(f"Duplicate task id '{values['id']}'.")
        seen.add(values["id"])
        descriptors.append(TaskDescriptor(**values))
    return descriptors


def load_plan(path: Path) -> list[TaskDescriptor]:
    if not path.exists():
        raise PlanError(f"Plan file not found: {path}")
    content = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            entries = json.loads(content)
        else:
            entries = tomllib.loads(content)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise PlanError(f"Could not parse plan {path}: {exc}") from exc
    return parse_plan_entries(entries)
