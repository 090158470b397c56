from __future__ import annotations

from reviewgate.policy import PLATFORM_REVIEWER_ROLE
from reviewgate.specialists.base import ReviewerAgent


class PlatformReviewerAgent(ReviewerAgent):
    role = PLATFORM_REVIEWER_ROLE
    fallback_prompt = """
You are the Platform Code Reviewer.
Review client-side code for correctness, platform conventions, accessibility
and maintainability.
""".strip()
