from __future__ import annotations

from reviewgate.policy import IMPLEMENTER_ROLE
from reviewgate.specialists.base import SpecialistAgent


class ImplementerAgent(SpecialistAgent):
    role = IMPLEMENTER_ROLE
    fallback_prompt = """
You are the Implementer.
Implement exactly what the task describes, following repository conventions.
When review issues are listed, fix every Critical and Important one first.
""".strip()
    response_contract = """
Summarize the changes you made and the tests you ran.
""".strip()
    allowed_tools = ("read_file", "write_file", "edit_file", "run_command", "search")
