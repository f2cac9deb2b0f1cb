"""
OpenAI evaluation client for article screening.

This module wraps the OpenAI chat completions API.  For each article
it builds the screening prompt, sends one completion request, and
parses the two labelled lines the model is asked to return::

    Decision: Include
    Explanation: The study enrolled adult human participants ...

Malformed replies and API failures are retried a fixed number of
times; rate limits and connection problems back off exponentially
before the next attempt.  When every attempt fails the client returns
an ``Unsure`` result carrying a failure note instead of raising, so a
single article can never abort a batch.

Response parsing failures are reported by
:class:`MalformedResponseError` with one of these reasons:

* ``empty_response`` - the model returned no text at all.
* ``missing_decision`` - no ``Decision:`` line with Include, Exclude or
  Unsure was found.  An echoed template line such as
  ``Decision: [Include | Exclude | Unsure]`` does not count.
* ``missing_explanation`` - no ``Explanation:`` label, nothing after it,
  or only the template placeholder.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Optional

from openai import APIConnectionError, APITimeoutError, OpenAI, RateLimitError

from .config import (
    ConfigurationError,
    get_max_retries,
    get_openai_timeout,
    get_retry_delay,
    resolve_api_key,
)
from .models import AISettings, Decision, EvaluationResult
from .prompts import EXPLANATION_PLACEHOLDER, CriteriaInput, build_evaluation_prompt

logger = logging.getLogger(__name__)

# Errors worth waiting for before the next attempt.
TRANSIENT_ERRORS = (RateLimitError, APIConnectionError, APITimeoutError)

FAILURE_NOTE = "evaluation_failed: AI did not respond correctly after {attempts} attempts (last failure: {reason})."

_DECISION_VARIANT_RE = re.compile(
    r'\**[ \t]*Decision[ \t]*\**[ \t]*:[ \t]*\**[ \t]*'
    r'(?:\[[ \t]*(Include|Exclude|Unsure)[ \t]*\]|(Include|Exclude|Unsure)\b(?![ \t]*\|))'
    r'[ \t]*\**[ \t]*[.!]?',
    re.IGNORECASE,
)
_EXPLANATION_VARIANT_RE = re.compile(r'\**[ \t]*Explanation[ \t]*\**[ \t]*:[ \t]*\**', re.IGNORECASE)

# A token followed by "|" is the echoed answer template, not a decision.
DECISION_RE = re.compile(r'Decision:\s*(Include|Exclude|Unsure)\b(?![ \t]*\|)', re.IGNORECASE)
EXPLANATION_RE = re.compile(r'Explanation:\s*(.*)', re.IGNORECASE | re.DOTALL)


class MalformedResponseError(ValueError):
    """Raised when a model reply does not follow the requested format."""

    def __init__(self, reason: str, response: str = '') -> None:
        super().__init__(f"Malformed model response ({reason})")
        self.reason = reason
        self.response = response


def normalize_response(response: str) -> str:
    """Canonicalise formatting variants around the labels.

    ``**Decision:** include.`` becomes ``Decision: Include`` and a bold
    ``**Explanation:**`` label becomes ``Explanation:``.  Trailing
    whitespace is removed.
    """
    cleaned = _DECISION_VARIANT_RE.sub(
        lambda m: f"Decision: {Decision.from_label(m.group(1) or m.group(2)).value}", response
    )
    cleaned = _EXPLANATION_VARIANT_RE.sub('Explanation:', cleaned)
    return cleaned.rstrip()


def parse_evaluation_response(response: Optional[str]) -> EvaluationResult:
    """Parse a raw model reply into an :class:`EvaluationResult`.

    Raises:
        MalformedResponseError: If the reply is empty or either label
            cannot be extracted.
    """
    if not response or not response.strip():
        raise MalformedResponseError('empty_response', response or '')
    cleaned = normalize_response(response)
    decision_match = DECISION_RE.search(cleaned)
    if not decision_match:
        raise MalformedResponseError('missing_decision', response)
    explanation_match = EXPLANATION_RE.search(cleaned)
    explanation = explanation_match.group(1).strip() if explanation_match else ''
    if not explanation or explanation.lower() == EXPLANATION_PLACEHOLDER.lower():
        raise MalformedResponseError('missing_explanation', response)
    return EvaluationResult(
        decision=Decision.from_label(decision_match.group(1)),
        explanation=explanation,
    )


class EvaluationClient:
    """Evaluate articles against inclusion criteria with an OpenAI model.

    Args:
        api_key: OpenAI key; falls back to ``OPENAI_API_KEY``.
        client: Pre-built OpenAI compatible client.  When given no key
            is required.
        max_retries: Additional attempts after the first one.
        retry_delay: Initial backoff delay in seconds for rate limits
            and connection errors, doubled on every attempt.
        timeout: Request timeout passed to the OpenAI client.
        sleep: Function used to wait between attempts.

    Raises:
        ConfigurationError: If neither a client nor an API key is
            available.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Any = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if client is None:
            client = OpenAI(
                api_key=resolve_api_key(api_key),
                timeout=timeout if timeout is not None else get_openai_timeout(),
            )
        self.client = client
        self.max_retries = get_max_retries() if max_retries is None else max(0, max_retries)
        self.retry_delay = get_retry_delay() if retry_delay is None else retry_delay
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def _complete(self, system_instruction: str, prompt: str, settings: AISettings) -> str:
        request = {
            'model': settings.model,
            'messages': [
                {'role': 'system', 'content': system_instruction},
                {'role': 'user', 'content': prompt},
            ],
            'temperature': settings.temperature,
            'max_tokens': settings.max_tokens,
        }
        if settings.seed is not None:
            request['seed'] = settings.seed
        completion = self.client.chat.completions.create(**request)
        choices = getattr(completion, 'choices', None) or []
        if not choices:
            return ''
        return (choices[0].message.content or '').strip()

    def evaluate(
        self,
        title: str,
        abstract: str,
        criteria: CriteriaInput,
        settings: Optional[AISettings],
    ) -> EvaluationResult:
        """Evaluate one article.

        Never raises for model problems: after ``max_attempts`` failed
        attempts an ``Unsure`` result with ``failed=True`` is returned.

        Raises:
            ConfigurationError: If ``settings`` is missing.
        """
        if settings is None:
            raise ConfigurationError("No AI settings found in the database")
        system_instruction, prompt = build_evaluation_prompt(title, abstract, criteria, settings)
        last_failure = 'unknown'
        for attempt in range(self.max_attempts):
            try:
                response = self._complete(system_instruction, prompt, settings)
                return parse_evaluation_response(response)
            except MalformedResponseError as e:
                last_failure = e.reason
                logger.warning(f"Attempt {attempt + 1}/{self.max_attempts}: {e.reason}. Retrying...")
            except TRANSIENT_ERRORS as e:
                last_failure = type(e).__name__
                if attempt < self.max_attempts - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Attempt {attempt + 1}/{self.max_attempts} failed: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )
                    self._sleep(delay)
            except Exception as e:
                last_failure = type(e).__name__
                logger.error(f"Unexpected error during OpenAI evaluation: {e}")
        logger.error(f"Failed to evaluate article after {self.max_attempts} attempts.")
        return EvaluationResult(
            decision=Decision.UNSURE,
            explanation=FAILURE_NOTE.format(attempts=self.max_attempts, reason=last_failure),
            failed=True,
        )
