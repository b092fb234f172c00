"""Question/answer generation from Markdown via a chat model."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bookmark_rag.core.errors import GenerationError
from bookmark_rag.core.llm_providers import LLMProvider
from bookmark_rag.core.prompts import get_prompt

if TYPE_CHECKING:
    from bookmark_rag.core.storage import DB

logger = logging.getLogger(__name__)

API_CONTENT_MAX_CHARS = 15000


@dataclass(frozen=True)
class QAPair:
    question: str
    answer: str


@dataclass
class QAGenerationResult:
    pairs: list[QAPair]
    tokens_input: int = 0
    tokens_output: int = 0
    cost_usd: float = 0.0


class QAGenerator(ABC):
    """Turns Markdown content into question/answer pairs."""

    @abstractmethod
    async def generate(self, markdown: str) -> QAGenerationResult:
        """Raises GenerationError on API or parse failure. Zero pairs is a valid result."""
        ...


def parse_pairs(content: str) -> list[QAPair]:
    """Parse a `{"pairs": [{"question", "answer"}]}` reply, dropping incomplete entries."""
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Chat API returned invalid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise GenerationError("Chat API returned JSON that is not an object")

    pairs = []
    for item in parsed.get("pairs") or []:
        if not isinstance(item, dict):
            continue
        question = str(item.get("question") or "").strip()
        answer = str(item.get("answer") or "").strip()
        if question and answer:
            pairs.append(QAPair(question=question, answer=answer))
    return pairs


class LLMQAGenerator(QAGenerator):
    def __init__(
        self,
        llm: LLMProvider,
        max_chars: int = API_CONTENT_MAX_CHARS,
        db: DB | None = None,
    ) -> None:
        self._llm = llm
        self._max_chars = max_chars
        self._db = db

    async def generate(self, markdown: str) -> QAGenerationResult:
        prompt = get_prompt("qa_generation", self._db)
        response = await self._llm.chat(
            messages=[
                {"role": "system", "content": prompt.template},
                {"role": "user", "content": markdown[: self._max_chars]},
            ],
            temperature=prompt.temperature,
            response_format={"type": "json_object"},
        )
        if not response.content:
            raise GenerationError("Empty response from chat API", provider=self._llm.name)

        pairs = parse_pairs(response.content)
        logger.info(f"Generated {len(pairs)} Q&A pairs ({response.tokens_input}+{response.tokens_output} tokens)")
        return QAGenerationResult(
            pairs=pairs,
            tokens_input=response.tokens_input,
            tokens_output=response.tokens_output,
            cost_usd=self._llm.estimate_cost(response.tokens_input, response.tokens_output),
        )
