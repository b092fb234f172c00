"""Prompt registry for LLM calls.

Defaults live here. A custom template can be stored in app_settings under
`prompt.<key>` and takes precedence over the default.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from bookmark_rag.core.storage import DB


@dataclass(frozen=True)
class PromptTemplate:
    """A prompt template with metadata."""

    key: str
    name: str
    template: str
    temperature: float
    is_custom: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "template": self.template,
            "temperature": self.temperature,
            "isCustom": self.is_custom,
        }


DEFAULT_PROMPTS: dict[str, PromptTemplate] = {
    "qa_generation": PromptTemplate(
        key="qa_generation",
        name="Q&A generation",
        template="""You generate question-answer pairs that make a document easy to find with semantic search.

For the document you are given, write 5-10 varied Q&A pairs that:
1. Cover its main topics and key facts
2. Mix factual questions ("What is X?") with conceptual ones ("How does X work?")
3. Match the queries someone would type when looking for this document
4. Keep each answer short but complete (1-3 sentences)

Reply with JSON only, in exactly this shape:
{"pairs": [{"question": "...", "answer": "..."}, ...]}""",
        temperature=0.7,
    ),
}


def _setting_key(key: str) -> str:
    return f"prompt.{key}"


def get_prompt(key: str, db: DB | None = None) -> PromptTemplate:
    """Get a prompt template, checking for a custom version first.

    Raises:
        KeyError: If no default prompt exists for `key`.
    """
    default = DEFAULT_PROMPTS[key]
    if db is None:
        return default
    custom = db.get_setting(_setting_key(key))
    if not custom:
        return default
    return replace(default, template=custom, is_custom=True)


def save_prompt(key: str, template: str, db: DB) -> None:
    if key not in DEFAULT_PROMPTS:
        raise KeyError(key)
    db.set_setting(_setting_key(key), template)


def reset_prompt(key: str, db: DB) -> None:
    """Drop the custom template so the default applies again."""
    db.set_setting(_setting_key(key), "")
