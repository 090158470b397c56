from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from reviewgate.models import Issue, Outcome, Severity, Stage, Verdict

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_MARKERS = (
    "approved",
    "approve",
    "lgtm",
    "spec compliant",
    "ready to merge: yes",
)
UNPARSEABLE_ISSUE = "response unparseable"
MISSING_APPROVAL_ISSUE = "no explicit approval marker in response"
RAW_RESPONSE_LIMIT = 4000

SEVERITY_ALIASES = {
    "critical": Severity.CRITICAL,
    "blocker": Severity.CRITICAL,
    "blockers": Severity.CRITICAL,
    "important": Severity.IMPORTANT,
    "major": Severity.IMPORTANT,
    "suggestion": Severity.SUGGESTION,
    "suggestions": Severity.SUGGESTION,
    "minor": Severity.SUGGESTION,
    "nit": Severity.SUGGESTION,
    "nits": Severity.SUGGESTION,
    "nitpick": Severity.SUGGESTION,
    "nitpicks": Severity.SUGGESTION,
}

_LABEL = r"(?P<label>critical|blockers?|important|major|minor|suggestions?|nit(?:pick)?s?)"
_EMPHASIS = r"(?:\*\*|__)?"
HEADING_PATTERN = re.compile(
    r"^(?:#{1,6}\s*)?" + _EMPHASIS + r"\s*" + _LABEL
    + r"(?:\s+(?:issues?|findings?))?\s*(?:\([^)]*\))?\s*:?\s*" + _EMPHASIS + r"\s*:?$",
    re.IGNORECASE,
)
INLINE_PATTERN = re.compile(
    r"^(?:[-*+]\s+|\d+[.)]\s+)?" + _EMPHASIS + _LABEL + _EMPHASIS
    + r"\s*[:\-–]\s*" + _EMPHASIS + r"\s*(?P<text>\S.*)$",
    re.IGNORECASE,
)
BRACKET_TAG_PATTERN = re.compile(
    r"^(?:[-*+]\s+|\d+[.)]\s+)?\[" + _LABEL + r"\]\s*[:\-–]?\s*(?P<text>\S.*)$",
    re.IGNORECASE,
)
BULLET_PATTERN = re.compile(r"^(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(?P<text>\S.*)$")
OTHER_HEADING_PATTERN = re.compile(
    r"^(?:#{1,6}\s+\S.*|(?:\*\*|__)[^*_]+(?:\*\*|__)\s*:?|[A-Za-z][A-Za-z /&-]{0,40}:)$"
)
NONE_PATTERN = re.compile(
    r"^(?:none|n/?a|nothing|no (?:issues?|findings?)(?: found)?)[.!]?$", re.IGNORECASE
)
VERDICT_PREFIX_PATTERN = re.compile(
    r"^(?:final\s+)?(?:verdict|status|result|decision|outcome|assessment)\s*:\s*",
    re.IGNORECASE,
)
REJECTION_MARKER_PATTERN = re.compile(
    r"^(?:rejected|reject|changes requested|request changes|not approved|ready to merge: no)$"
)


class ParseError(ValueError):
    """Raised when a reviewer response carries neither an approval nor issues."""

    def __init__(self, message: str, *, response: str = "") -> None:
        super().__init__(message)
        self.response = response


def _clean(text: str) -> str:
    return text.strip().strip("*_`").strip()


def _strip_markup(line: str) -> str:
    candidate = re.sub(r"[*_`#>]", "", line).strip()
    return re.sub(r"^[^\w]+", "", candidate).lower()


def _is_json_line(line: str) -> bool:
    return line.startswith("{") and line.endswith("}")


def _normalize_marker(line: str) -> str:
    candidate = _strip_markup(line)
    candidate = re.sub(r"\s*[:?]\s*", ": ", candidate)
    candidate = re.sub(r"\s+", " ", candidate).strip()
    candidate = candidate.rstrip(".!").strip()
    return VERDICT_PREFIX_PATTERN.sub("", candidate).strip()


class VerdictParser:
    """Turns free-form reviewer text into a :class:`Verdict`.

    Two response shapes are understood and may be mixed. One-line JSON objects
    carrying a ``verdict`` and/or ``issues`` key, and markdown Critical /
    Important / Suggestion sections or tagged items. Issues from both are
    merged; approval comes from a JSON ``verdict`` or the last non-empty line.

    Parsing fails closed: approval requires an explicit marker and no blocking
    issue, and a response with neither raises :class:`ParseError`.
    """

    def __init__(self, approval_markers: Iterable[str] | None = None) -> None:
        markers = approval_markers if approval_markers is not None else DEFAULT_APPROVAL_MARKERS
        self.approval_markers = {_normalize_marker(marker) for marker in markers if marker.strip()}
        if not self.approval_markers:
            raise ValueError("At least one approval marker is required.")

    def parse(self, response: str, *, stage: Stage, role: str = "") -> Verdict:
        text = response.strip()
        if not text:
            raise ParseError("Reviewer response is empty.", response=response)

        structured_marker, issues = self._parse_structured(text)
        for issue in self._parse_markdown(text):
            if issue not in issues:
                issues.append(issue)
        approved_marker = structured_marker or self._has_terminal_marker(text)

        if not approved_marker and not issues:
            raise ParseError(
                "Reviewer response has no approval marker and no issue list.",
                response=response,
            )

        blocking = [issue for issue in issues if issue.severity.blocking]
        if approved_marker and not blocking:
            outcome = Outcome.APPROVED
        else:
            outcome = Outcome.REJECTED
            if approved_marker:
                logger.debug(
                    "Approval marker overridden by %d blocking issue(s) at %s.",
                    len(blocking),
                    stage.value,
                )
            if not blocking:
                issues.append(Issue(Severity.IMPORTANT, MISSING_APPROVAL_ISSUE))

        return Verdict(
            stage=stage,
            outcome=outcome,
            issues=issues,
            role=role,
            raw_response=text[:RAW_RESPONSE_LIMIT],
        )

    def is_approval_marker(self, line: str) -> bool:
        return _normalize_marker(line) in self.approval_markers

    def _has_terminal_marker(self, text: str) -> bool:
        lines = [line for line in text.splitlines() if line.strip()]
        if not lines:
            return False
        return self.is_approval_marker(lines[-1])

    @staticmethod
    def _extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
        payloads: list[dict[str, Any]] = []
        for raw_line in raw_text.splitlines():
            line = raw_line.strip()
            if not _is_json_line(line):
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                payloads.append(parsed)
        return payloads

    def _parse_structured(self, text: str) -> tuple[bool, list[Issue]]:
        payloads = [
            payload
            for payload in self._extract_json_objects(text)
            if "verdict" in payload or "issues" in payload
        ]
        approved_marker = False
        issues: list[Issue] = []
        for payload in payloads:
            verdict = payload.get("verdict")
            if isinstance(verdict, str) and self.is_approval_marker(verdict):
                approved_marker = True
            items = payload.get("issues")
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                severity = SEVERITY_ALIASES.get(str(item.get("severity", "")).strip().lower())
                text_value = item.get("text") or item.get("message") or item.get("description")
                if severity is None or not isinstance(text_value, str) or not text_value.strip():
                    continue
                issues.append(Issue(severity, text_value.strip()))
        return approved_marker, issues

    def _parse_markdown(self, text: str) -> list[Issue]:
        issues: list[Issue] = []
        section: Severity | None = None
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            if _is_json_line(line):
                continue
            if self.is_approval_marker(line) or REJECTION_MARKER_PATTERN.match(
                _normalize_marker(line)
            ):
                section = None
                continue
            if not BULLET_PATTERN.match(line) and VERDICT_PREFIX_PATTERN.match(_strip_markup(line)):
                section = None
                continue

            heading = HEADING_PATTERN.match(line)
            if heading:
                section = SEVERITY_ALIASES[heading.group("label").lower()]
                continue

            tagged = BRACKET_TAG_PATTERN.match(line) or INLINE_PATTERN.match(line)
            if tagged:
                item = _clean(tagged.group("text"))
                if item and not NONE_PATTERN.match(item):
                    issues.append(Issue(SEVERITY_ALIASES[tagged.group("label").lower()], item))
                continue

            if OTHER_HEADING_PATTERN.match(line):
                section = None
                continue

            if section is None:
                continue
            bullet = BULLET_PATTERN.match(line)
            item = _clean(bullet.group("text") if bullet else line)
            if item and not NONE_PATTERN.match(item):
                issues.append(Issue(section, item))
        return issues
