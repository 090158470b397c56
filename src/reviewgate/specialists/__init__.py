from reviewgate.specialists.backend_reviewer import BackendReviewerAgent
from reviewgate.specialists.base import ReviewerAgent, SpecialistAgent, SpecialistResponse
from reviewgate.specialists.implementer import ImplementerAgent
from reviewgate.specialists.platform_reviewer import PlatformReviewerAgent
from reviewgate.specialists.spec_reviewer import SpecReviewerAgent
from reviewgate.specialists.ux_reviewer import UXReviewerAgent

__all__ = [
    "BackendReviewerAgent",
    "ImplementerAgent",
    "PlatformReviewerAgent",
    "ReviewerAgent",
    "SpecReviewerAgent",
    "SpecialistAgent",
    "SpecialistResponse",
    "UXReviewerAgent",
]
