"""
Plain data types shared by the parser, the evaluation client and the
batch orchestrator.

These are deliberately free of any persistence concerns; the ORM
models live in :mod:`revai.backend.database`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Decision(str, Enum):
    """Screening decision used for both AI and reviewer decisions."""

    INCLUDE = "Include"
    EXCLUDE = "Exclude"
    UNSURE = "Unsure"

    @classmethod
    def from_label(cls, label: str) -> "Decision":
        """Map a case-insensitive label such as ``include`` to a decision."""
        normalised = (label or '').strip().lower()
        for decision in cls:
            if decision.value.lower() == normalised:
                return decision
        raise ValueError(f"Unknown decision: {label!r}")


@dataclass(frozen=True)
class Criterion:
    """One inclusion rule of a review session."""

    id: str
    text: str


@dataclass(frozen=True)
class ParsedArticle:
    """An article extracted from an uploaded text file."""

    id: int
    title: str
    abstract: str
    full_text: str


@dataclass(frozen=True)
class AISettings:
    """Snapshot of one stored AI settings version."""

    id: Optional[int]
    instructions: str
    temperature: float
    max_tokens: int
    seed: Optional[int]
    model: str
    batch_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'instructions': self.instructions,
            'temperature': self.temperature,
            'max_tokens': self.max_tokens,
            'seed': self.seed,
            'model': self.model,
            'batch_size': self.batch_size,
        }


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of evaluating one article.

    ``failed`` is set when the client gave up and returned the Unsure
    fallback instead of a real model decision.
    """

    decision: Decision
    explanation: str
    failed: bool = False
