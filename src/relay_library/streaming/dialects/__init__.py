# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from typing import Dict

from .anthropic import ANTHROPIC_DIALECT, AnthropicHandler
from .base import Dialect, DialectHandler
from .gemini import GEMINI_DIALECT, GeminiHandler
from .openai import OPENAI_DIALECT, OpenAIHandler

DIALECTS: Dict[str, Dialect] = {
    dialect.name: dialect
    for dialect in (OPENAI_DIALECT, ANTHROPIC_DIALECT, GEMINI_DIALECT)
}


def get_dialect(name: str) -> Dialect:
    """Looks up a dialect by tag ("openai", "anthropic", "gemini")."""
    try:
        return DIALECTS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown dialect '{name}'. Available: {', '.join(sorted(DIALECTS))}"
        ) from None


__all__ = [
    "Dialect",
    "DialectHandler",
    "DIALECTS",
    "get_dialect",
    "OpenAIHandler",
    "AnthropicHandler",
    "GeminiHandler",
    "OPENAI_DIALECT",
    "ANTHROPIC_DIALECT",
    "GEMINI_DIALECT",
]
