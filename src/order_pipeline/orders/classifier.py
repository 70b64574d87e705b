"""Heuristic order-to-agent-type routing."""

from __future__ import annotations

import re
from typing import Protocol

DEFAULT_AGENT_TYPE = "code"

_KEYWORD_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("execution", re.compile(r"deploy|release|run|execute|ops|operation")),
    ("research", re.compile(r"research|investigate|find|lookup")),
    ("analysis", re.compile(r"analy|insight|report|metrics")),
    ("communication", re.compile(r"message|email|write|draft|communicat")),
)


class OrderClassifier(Protocol):
    """Maps an order description to an agent type name."""

    def classify(self, description: str) -> str:
        """Return the agent type for ``description``."""


class KeywordOrderClassifier:
    """First matching keyword rule wins; falls back to ``code``."""

    def __init__(
        self,
        rules: tuple[tuple[str, re.Pattern[str]], ...] = _KEYWORD_RULES,
        default: str = DEFAULT_AGENT_TYPE,
    ) -> None:
        self.rules = rules
        self.default = default

    def classify(self, description: str) -> str:
        lowered = description.lower()
        for agent_type, pattern in self.rules:
            if pattern.search(lowered):
                return agent_type
        return self.default
