from __future__ import annotations

from typing import NamedTuple

SYSTEM_INSTRUCTION = "You output only a JSON object, no commentary."

LANDING_SHAPE_TEMPLATE = """{
  "hero": {"title":"", "subtitle":"", "cta":""},
  "benefits": [{"title":"","text":""}],
  "process": [{"step_title":"","step_text":""}],
  "faq": [{"q":"","a":""}],
  "seo": {"title":"","description":""}
}"""


class Prompt(NamedTuple):
    system: str
    user: str

    def as_messages(self) -> list[dict]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


def build_prompt(brief: str, page_type: str) -> Prompt:
    """Build the chat prompt for one landing page.

    The brief is untrusted text handed to an external model, so it is interpolated
    as-is: nothing here executes it.
    """
    user = f"""
You are a JSON generator for a law firm's landing page.
Input brief: {brief}
page_type: {page_type}
Output ONLY valid JSON with structure:
{LANDING_SHAPE_TEMPLATE}
Tone: professional, concise, trustful.
Do not output anything except the JSON object.
"""
    return Prompt(system=SYSTEM_INSTRUCTION, user=user)
