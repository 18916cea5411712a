"""
Text generation collaborator for path titles and descriptions.

Generated text is opaque: it is only ever shown to people, never parsed
for sequencing or progress decisions. Any failure degrades to a default
string and is recorded on the generation tracker.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from langchain_core.prompts import PromptTemplate
from langchain_openai import ChatOpenAI

from ..config import config, generation_tracker

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 1000


TITLE_PROMPT = PromptTemplate(
    input_variables=["skills", "role", "difficulty"],
    template="""You name learning paths for an online learning platform.

Target skills: {skills}
Target role: {role}
Difficulty: {difficulty}

Reply with a single short, motivating title (at most 8 words).
Do not use quotes or any extra text.""",
)

DESCRIPTION_PROMPT = PromptTemplate(
    input_variables=["title", "skills", "role", "difficulty", "weeks"],
    template="""Write a 2-3 sentence description for the learning path "{title}".

Target skills: {skills}
Target role: {role}
Difficulty: {difficulty}
Estimated duration: {weeks} weeks

Address the learner directly. Reply with the description only.""",
)

ADAPTIVE_DESCRIPTION_PROMPT = PromptTemplate(
    input_variables=["path_title", "areas"],
    template="""Write a 2 sentence description for a remediation learning path
based on "{path_title}".

Areas to revisit: {areas}

Address the learner directly. Reply with the description only.""",
)


class TextGenerator(ABC):
    """Narrow interface: prompt in, text out. Raise on failure."""

    @abstractmethod
    def generate_text(self, prompt: str) -> str:
        """Return generated text for ``prompt``."""


class LLMTextGenerator(TextGenerator):
    """
    ChatOpenAI-backed generator.

    The client is built on first use so constructing the engine never needs
    credentials or network access.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        llm: Optional[ChatOpenAI] = None,
    ):
        self.model_name = model_name or config.model.model_name
        self.temperature = temperature if temperature is not None else config.model.temperature
        self._llm = llm

    @property
    def llm(self) -> ChatOpenAI:
        if self._llm is None:
            self._llm = ChatOpenAI(
                model=self.model_name,
                temperature=self.temperature,
                api_key=config.model.api_key,
                base_url=config.model.base_url,
                max_tokens=config.model.max_tokens,
                timeout=config.model.request_timeout,
                max_retries=config.model.max_retries,
            )
        return self._llm

    def generate_text(self, prompt: str) -> str:
        response = self.llm.invoke(prompt)
        usage = getattr(response, "usage_metadata", None) or {}
        generation_tracker.add_call(
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        )
        return response.content


class StaticTextGenerator(TextGenerator):
    """Returns a fixed string; useful for tests and offline runs."""

    def __init__(self, text: str):
        self.text = text

    def generate_text(self, prompt: str) -> str:
        generation_tracker.add_call()
        return self.text


def default_text_generator() -> Optional[TextGenerator]:
    """LLM generator when enabled in config, else None (defaults only)."""
    if config.model.enabled:
        return LLMTextGenerator()
    return None


def _clean(text: str, limit: int, single_line: bool) -> str:
    text = (text or "").strip()
    if single_line:
        text = text.splitlines()[0].strip() if text else ""
        text = text.strip("\"'").strip()
    return text[:limit].rstrip()


def generate_or_default(
    generator: Optional[TextGenerator],
    prompt: str,
    default: str,
    purpose: str = "text",
    single_line: bool = False,
) -> str:
    """
    Ask the generator for text, falling back to ``default``.

    Never raises: empty output or any collaborator error returns the default
    and records a fallback with its reason.
    """
    if generator is None:
        return default

    limit = MAX_TITLE_LENGTH if single_line else MAX_DESCRIPTION_LENGTH
    try:
        text = _clean(generator.generate_text(prompt), limit, single_line)
    except Exception as e:
        logger.warning("Text generation for %s failed, using default: %s", purpose, e)
        generation_tracker.record_fallback(f"{purpose}: {type(e).__name__}: {e}")
        return default

    if not text:
        logger.warning("Text generation for %s returned nothing, using default", purpose)
        generation_tracker.record_fallback(f"{purpose}: empty response")
        return default
    return text
