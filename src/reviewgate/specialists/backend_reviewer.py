from __future__ import annotations

from reviewgate.policy import BACKEND_REVIEWER_ROLE
from reviewgate.specialists.base import ReviewerAgent


class BackendReviewerAgent(ReviewerAgent):
    role = BACKEND_REVIEWER_ROLE
    fallback_prompt = """
You are the Backend Code Reviewer.
Review server-side code for correctness, security, data integrity and
maintainability.
""".strip()
