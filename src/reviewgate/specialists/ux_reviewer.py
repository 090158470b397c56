from __future__ import annotations

from reviewgate.policy import UX_REVIEWER_ROLE
from reviewgate.specialists.base import ReviewerAgent


class UXReviewerAgent(ReviewerAgent):
    role = UX_REVIEWER_ROLE
    fallback_prompt = """
You are the User Experience Reviewer.
Review the user-facing behavior of the change: feedback, error recovery,
consistency and accessibility.
""".strip()
