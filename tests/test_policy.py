import pytest

from reviewgate.models import Gate, Stage
from reviewgate.policy import PolicyError, StagePolicyTable, normalize_content_type


def _stages(gates: list[Gate]) -> list[Stage]:
    return [gate.stage for gate in gates]


def test_platform_ui_gets_platform_reviewer_and_ux_review() -> None:
    gates = StagePolicyTable().resolve("platform-ui")

    assert gates == [
        Gate(Stage.IMPLEMENT, "implementer"),
        Gate(Stage.SPEC_REVIEW, "spec-reviewer"),
        Gate(Stage.CODE_REVIEW, "platform-reviewer"),
        Gate(Stage.UX_REVIEW, "ux-reviewer"),
    ]


def test_backend_omits_ux_review() -> None:
    gates = StagePolicyTable().resolve("backend")

    assert _stages(gates) == [Stage.IMPLEMENT, Stage.SPEC_REVIEW, Stage.CODE_REVIEW]
    assert gates[-1].role == "backend-reviewer"


def test_mixed_requires_both_specialists_in_order() -> None:
    gates = StagePolicyTable().resolve("mixed")

    assert [gate.label for gate in gates] == [
        "implement:implementer",
        "spec_review:spec-reviewer",
        "code_review:platform-reviewer",
        "code_review:backend-reviewer",
        "ux_review:ux-reviewer",
    ]


def test_unknown_content_type_raises() -> None:
    with pytest.raises(PolicyError, match="Unknown content-type 'firmware'"):
        StagePolicyTable().resolve("firmware")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Platform_UI", "platform-ui"),
        ("backend-only", "backend"),
        ("ui", "platform-ui"),
        (" Mixed ", "mixed"),
    ],
)
def test_content_type_aliases(raw: str, expected: str) -> None:
    assert normalize_content_type(raw) == expected


def test_from_mapping_uses_explicit_user_facing_metadata() -> None:
    table = StagePolicyTable.from_mapping(
        {"backend": ["backend-reviewer"], "cli": ["backend-reviewer", "security-reviewer"]},
        user_facing=["cli"],
    )

    assert Stage.UX_REVIEW not in _stages(table.resolve("backend"))
    assert [gate.role for gate in table.resolve("cli")] == [
        "implementer",
        "spec-reviewer",
        "backend-reviewer",
        "security-reviewer",
        "ux-reviewer",
    ]
    assert table.roles() == [
        "implementer",
        "spec-reviewer",
        "backend-reviewer",
        "security-reviewer",
        "ux-reviewer",
    ]


def test_from_mapping_rejects_user_facing_type_without_reviewers() -> None:
    with pytest.raises(PolicyError, match="without reviewers: platform-ui"):
        StagePolicyTable.from_mapping({"backend": ["backend-reviewer"]}, ["platform-ui"])


def test_content_type_without_reviewers_is_rejected() -> None:
    with pytest.raises(PolicyError, match="no code reviewers"):
        StagePolicyTable.from_mapping({"backend": []}, [])
