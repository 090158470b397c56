from __future__ import annotations

from reviewgate.policy import SPEC_REVIEWER_ROLE
from reviewgate.specialists.base import ReviewerAgent


class SpecReviewerAgent(ReviewerAgent):
    role = SPEC_REVIEWER_ROLE
    fallback_prompt = """
You are the Specification Reviewer.
Check that the implementation does everything the task asks for and nothing
it does not. Missing requirements are Important; extra scope is Important.
""".strip()
