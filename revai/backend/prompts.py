"""
Prompt construction for article evaluation.

The builder renders the user prompt sent to the chat model from the
session criteria and one article.  The system message is taken
verbatim from the settings version in use.  Nothing here touches the
network or the database.
"""

from __future__ import annotations

from typing import Any, Iterable, Tuple, Union

from .models import AISettings, Criterion

NO_ABSTRACT_PLACEHOLDER = "(No abstract available)"
EXPLANATION_PLACEHOLDER = "[Short explanation why you made this decision]"

CriteriaInput = Union[str, Iterable[Any]]


def format_criteria(criteria: CriteriaInput) -> str:
    """Return the criteria as newline separated text.

    Lists of ``{"id", "text"}`` dicts or :class:`Criterion` objects are
    joined in list order without reordering or deduplication.
    """
    if criteria is None:
        return ''
    if isinstance(criteria, str):
        return criteria
    texts = []
    for item in criteria:
        if isinstance(item, Criterion):
            texts.append(item.text)
        elif isinstance(item, dict):
            texts.append(str(item.get('text', '')))
        else:
            texts.append(str(item))
    return '\n'.join(texts)


def build_evaluation_prompt(
    title: str,
    abstract: str,
    criteria: CriteriaInput,
    settings: AISettings,
) -> Tuple[str, str]:
    """Build the ``(system_instruction, prompt)`` pair for one article."""
    criteria_lines = [line.strip() for line in format_criteria(criteria).split('\n') if line.strip()]
    numbered = '\n'.join(f"{i}. {text}" for i, text in enumerate(criteria_lines, start=1))
    abstract_text = abstract.strip() if abstract and abstract.strip() else NO_ABSTRACT_PLACEHOLDER
    prompt = f"""You are given a list of inclusion criteria and an article (title and abstract).

Evaluate the article according to the criteria.

---
INCLUSION CRITERIA:
{numbered}
---

ARTICLE TITLE:
{(title or '').strip()}

ARTICLE ABSTRACT:
{abstract_text}
---

Respond in the following format:
Decision: [Include | Exclude | Unsure]
Explanation: {EXPLANATION_PLACEHOLDER}"""
    return settings.instructions, prompt
