from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from reviewgate.models import Gate, Stage

IMPLEMENTER_ROLE = "implementer"
SPEC_REVIEWER_ROLE = "spec-reviewer"
PLATFORM_REVIEWER_ROLE = "platform-reviewer"
BACKEND_REVIEWER_ROLE = "backend-reviewer"
UX_REVIEWER_ROLE = "ux-reviewer"

CONTENT_TYPE_ALIASES = {
    "backend-only": "backend",
    "platform": "platform-ui",
    "ui": "platform-ui",
}


class PolicyError(ValueError):
    """Raised when a content-type has no gate policy."""


def normalize_content_type(content_type: str) -> str:
    normalized = content_type.strip().lower().replace("_", "-").replace(" ", "-")
    return CONTENT_TYPE_ALIASES.get(normalized, normalized)


@dataclass(slots=True, frozen=True)
class ReviewerAssignment:
    content_type: str
    code_reviewers: tuple[str, ...]
    user_facing: bool


DEFAULT_ASSIGNMENTS: dict[str, ReviewerAssignment] = {
    "platform-ui": ReviewerAssignment("platform-ui", (PLATFORM_REVIEWER_ROLE,), True),
    "backend": ReviewerAssignment("backend", (BACKEND_REVIEWER_ROLE,), False),
    "mixed": ReviewerAssignment(
        "mixed", (PLATFORM_REVIEWER_ROLE, BACKEND_REVIEWER_ROLE), True
    ),
}


class StagePolicyTable:
    """Maps a task content-type to its ordered gate list.

    UX review is added only for content-types explicitly marked user facing.
    Code review expands to one gate per assigned reviewer, in order, so a
    mixed task needs each specialist to approve in turn.
    """

    def __init__(self, assignments: Mapping[str, ReviewerAssignment] | None = None) -> None:
        source = DEFAULT_ASSIGNMENTS if assignments is None else assignments
        self._assignments: dict[str, ReviewerAssignment] = {}
        for key, assignment in source.items():
            if not assignment.code_reviewers:
                raise PolicyError(f"Content-type '{key}' has no code reviewers.")
            self._assignments[normalize_content_type(key)] = assignment

    @classmethod
    def from_mapping(
        cls,
        reviewers: Mapping[str, Iterable[str]],
        user_facing: Iterable[str],
    ) -> StagePolicyTable:
        user_facing_types = {normalize_content_type(item) for item in user_facing}
        assignments: dict[str, ReviewerAssignment] = {}
        for content_type, roles in reviewers.items():
            key = normalize_content_type(content_type)
            assignments[key] = ReviewerAssignment(
                content_type=key,
                code_reviewers=tuple(str(role).strip() for role in roles if str(role).strip()),
                user_facing=key in user_facing_types,
            )
        unknown = sorted(user_facing_types - set(assignments))
        if unknown:
            raise PolicyError(
                "User-facing content-types without reviewers: " + ", ".join(unknown)
            )
        return cls(assignments)

    @property
    def content_types(self) -> list[str]:
        return sorted(self._assignments)

    def assignment(self, content_type: str) -> ReviewerAssignment:
        key = normalize_content_type(content_type)
        assignment = self._assignments.get(key)
        if assignment is None:
            raise PolicyError(
                f"Unknown content-type '{content_type}'. "
                f"Known: {', '.join(self.content_types)}"
            )
        return assignment

    def resolve(self, content_type: str) -> list[Gate]:
        assignment = self.assignment(content_type)
        gates = [
            Gate(Stage.IMPLEMENT, IMPLEMENTER_ROLE),
            Gate(Stage.SPEC_REVIEW, SPEC_REVIEWER_ROLE),
        ]
        gates.extend(Gate(Stage.CODE_REVIEW, role) for role in assignment.code_reviewers)
        if assignment.user_facing:
            gates.append(Gate(Stage.UX_REVIEW, UX_REVIEWER_ROLE))
        return gates

    def roles(self) -> list[str]:
        ordered = [IMPLEMENTER_ROLE, SPEC_REVIEWER_ROLE]
        for assignment in self._assignments.values():
            for role in assignment.code_reviewers:
                if role not in ordered:
                    ordered.append(role)
        if any(assignment.user_facing for assignment in self._assignments.values()):
            ordered.append(UX_REVIEWER_ROLE)
        return ordered
