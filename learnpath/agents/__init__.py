"""
Path generation agents.

- Text generation (LangChain ChatOpenAI for titles and descriptions only)
- Path Template Builder (tier-driven step synthesis)
- Adaptive Regenerator (remediation paths from performance signals)

Sequencing never depends on generated text.
"""

from .text_generator import (
    LLMTextGenerator,
    StaticTextGenerator,
    TextGenerator,
    default_text_generator,
    generate_or_default,
)
from .path_builder import PathTemplateBuilder
from .regenerator import AdaptiveRegenerator, remediation_steps

__all__ = [
    # Text generation
    "TextGenerator",
    "LLMTextGenerator",
    "StaticTextGenerator",
    "default_text_generator",
    "generate_or_default",
    # Builders
    "PathTemplateBuilder",
    "AdaptiveRegenerator",
    "remediation_steps",
]
