from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from reviewgate.policy import (
    BACKEND_REVIEWER_ROLE,
    PLATFORM_REVIEWER_ROLE,
    PolicyError,
    StagePolicyTable,
)
from reviewgate.verdicts import DEFAULT_APPROVAL_MARKERS

BackendName = Literal["codex", "claude"]
BlockedMode = Literal["defer", "prompt"]

BACKEND_NAMES = ("claude", "codex")
BLOCKED_MODES = ("defer", "prompt")
DEFAULT_CONFIG_NAME = "reviewgate.toml"
BARE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class ConfigError(ValueError):
    """Raised when the configuration file cannot drive a run."""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class AgentsConfig:
    implementer_model: str = ""
    reviewer_model: str = ""
    prompt_dir: str = ""


@dataclass(slots=True)
class WorkflowConfig:
    max_rejections_per_stage: int = 3
    dispatch_timeout_seconds: float = 1200.0
    on_blocked: BlockedMode = "defer"
    approval_markers: list[str] = field(default_factory=lambda: list(DEFAULT_APPROVAL_MARKERS))


@dataclass(slots=True)
class PolicyConfig:
    user_facing: list[str] = field(default_factory=lambda: ["platform-ui", "mixed"])


@dataclass(slots=True)
class StateConfig:
    directory: str = ".reviewgate/state"


def _default_reviewers() -> dict[str, list[str]]:
    return {
        "platform-ui": [PLATFORM_REVIEWER_ROLE],
        "backend": [BACKEND_REVIEWER_ROLE],
        "mixed": [PLATFORM_REVIEWER_ROLE, BACKEND_REVIEWER_ROLE],
    }


@dataclass(slots=True)
class ReviewgateConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    reviewers: dict[str, list[str]] = field(default_factory=_default_reviewers)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ReviewgateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ReviewgateConfig:
        reviewers = data.get("reviewers")
        return cls(
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            policy=PolicyConfig(**data.get("policy", {})),
            reviewers=(
                {str(key): list(value) for key, value in reviewers.items()}
                if isinstance(reviewers, dict)
                else _default_reviewers()
            ),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "implementer_model": self.agents.implementer_model,
                "reviewer_model": self.agents.reviewer_model,
                "prompt_dir": self.agents.prompt_dir,
            },
            "workflow": {
                "max_rejections_per_stage": self.workflow.max_rejections_per_stage,
                "dispatch_timeout_seconds": self.workflow.dispatch_timeout_seconds,
                "on_blocked": self.workflow.on_blocked,
                "approval_markers": list(self.workflow.approval_markers),
            },
            "policy": {
                "user_facing": list(self.policy.user_facing),
            },
            "reviewers": {key: list(value) for key, value in self.reviewers.items()},
            "state": {
                "directory": self.state.directory,
            },
        }

    def build_policy(self) -> StagePolicyTable:
        try:
            return StagePolicyTable.from_mapping(self.reviewers, self.policy.user_facing)
        except PolicyError as exc:
            raise ConfigError(str(exc)) from exc

    def validate(self) -> None:
        cap = self.workflow.max_rejections_per_stage
        if isinstance(cap, bool) or not isinstance(cap, int) or cap < 1:
            raise ConfigError("workflow.max_rejections_per_stage must be a positive integer.")
        if self.workflow.dispatch_timeout_seconds <= 0:
            raise ConfigError("workflow.dispatch_timeout_seconds must be positive.")
        if self.workflow.on_blocked not in BLOCKED_MODES:
            raise ConfigError(
                f"workflow.on_blocked must be one of: {', '.join(BLOCKED_MODES)}."
            )
        if not any(marker.strip() for marker in self.workflow.approval_markers):
            raise ConfigError("workflow.approval_markers must name at least one marker.")
        for name in (self.backend.primary, self.backend.fallback):
            if name not in BACKEND_NAMES:
                raise ConfigError(f"Unknown backend '{name}'.")
        if self.backend.max_retries < 0:
            raise ConfigError("backend.max_retries cannot be negative.")
        if self.backend.timeout_seconds <= 0:
            raise ConfigError("backend.timeout_seconds must be positive.")
        self.build_policy()


def _toml_key(key: str) -> str:
    return key if BARE_KEY_PATTERN.match(key) else json.dumps(key, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ReviewgateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["backend", "agents", "workflow", "policy", "reviewers", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ReviewgateConfig:
    if not path.exists():
        return ReviewgateConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    try:
        return ReviewgateConfig.from_dict(data)
    except TypeError as exc:
        raise ConfigError(f"Unsupported setting in {path}: {exc}") from exc


def save_config(path: Path, config: ReviewgateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
