"""Tests for prompt construction, response parsing and the retry loop."""

from __future__ import annotations

import httpx
import openai
import pytest

from revai.backend import evaluator, prompts
from revai.backend.config import ConfigurationError
from revai.backend.models import AISettings, Criterion, Decision
from revai.tests.conftest import INSTRUCTIONS, FakeOpenAI

SETTINGS = AISettings(
    id=3,
    instructions=INSTRUCTIONS,
    temperature=0.2,
    max_tokens=300,
    seed=42,
    model='gpt-4o-mini',
)

_REQUEST = httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')


def rate_limit_error() -> openai.RateLimitError:
    return openai.RateLimitError(
        'Rate limit reached',
        response=httpx.Response(429, request=_REQUEST),
        body=None,
    )


def make_client(replies, max_retries=2, retry_delay=1.0):
    fake = FakeOpenAI(replies)
    sleeps = []
    client = evaluator.EvaluationClient(
        client=fake,
        max_retries=max_retries,
        retry_delay=retry_delay,
        sleep=sleeps.append,
    )
    return client, fake, sleeps


def test_prompt_numbers_criteria_and_uses_placeholder() -> None:
    criteria = [Criterion(id='a', text='Must be human study'), {'id': 'b', 'text': 'Adults only'}]
    system, prompt = prompts.build_evaluation_prompt('Foo', '  ', criteria, SETTINGS)
    assert system == INSTRUCTIONS
    assert '1. Must be human study\n2. Adults only' in prompt
    assert 'ARTICLE TITLE:\nFoo' in prompt
    assert prompts.NO_ABSTRACT_PLACEHOLDER in prompt
    assert prompt.endswith(
        'Decision: [Include | Exclude | Unsure]\n'
        'Explanation: [Short explanation why you made this decision]'
    )


def test_format_criteria_keeps_order_and_duplicates() -> None:
    criteria = [{'id': '1', 'text': 'B'}, {'id': '2', 'text': 'A'}, {'id': '3', 'text': 'B'}]
    assert prompts.format_criteria(criteria) == 'B\nA\nB'
    assert prompts.format_criteria('already text') == 'already text'


def test_parse_plain_response() -> None:
    result = evaluator.parse_evaluation_response('Decision: Include\nExplanation: because X')
    assert result.decision is Decision.INCLUDE
    assert result.explanation == 'because X'
    assert not result.failed


def test_parse_formatting_variants() -> None:
    result = evaluator.parse_evaluation_response(
        '**Decision:** exclude.\n**Explanation:** Animal study, not human.'
    )
    assert result.decision is Decision.EXCLUDE
    assert result.explanation == 'Animal study, not human.'
    result = evaluator.parse_evaluation_response('Decision: [Unsure]\nExplanation: Abstract is vague')
    assert result.decision is Decision.UNSURE


@pytest.mark.parametrize('response, reason', [
    ('', 'empty_response'),
    ('   \n', 'empty_response'),
    ('Explanation: no decision here', 'missing_decision'),
    ('Decision: Maybe\nExplanation: hm', 'missing_decision'),
    ('Decision: Include', 'missing_explanation'),
    ('Decision: Include\nExplanation:   ', 'missing_explanation'),
    (
        'Decision: [Include | Exclude | Unsure]\n'
        'Explanation: [Short explanation why you made this decision]',
        'missing_decision',
    ),
    ('Decision: Include | Exclude\nExplanation: Human study', 'missing_decision'),
    ('**Decision:** [Include | Exclude]\nExplanation: Human study', 'missing_decision'),
    ('Decision: Include\nExplanation: [Short explanation why you made this decision]', 'missing_explanation'),
])
def test_parse_failure_reasons(response, reason) -> None:
    with pytest.raises(evaluator.MalformedResponseError) as excinfo:
        evaluator.parse_evaluation_response(response)
    assert excinfo.value.reason == reason


def test_evaluate_sends_settings_to_model() -> None:
    client, fake, _ = make_client(['Decision: Include\nExplanation: Human participants.'])
    result = client.evaluate('Foo', 'Bar', 'Must be human study', SETTINGS)
    assert result.decision is Decision.INCLUDE
    assert len(fake.calls) == 1
    call = fake.calls[0]
    assert call['model'] == 'gpt-4o-mini'
    assert call['temperature'] == 0.2
    assert call['max_tokens'] == 300
    assert call['seed'] == 42
    assert [m['role'] for m in call['messages']] == ['system', 'user']
    assert call['messages'][0]['content'] == INSTRUCTIONS


def test_malformed_replies_fall_back_to_unsure() -> None:
    """Every attempt lacks a decision: Unsure after exactly three calls."""
    client, fake, sleeps = make_client(['I think it is relevant.'])
    result = client.evaluate('Foo', 'Bar', 'Must be human study', SETTINGS)
    assert result.decision is Decision.UNSURE
    assert result.failed
    assert 'after 3 attempts' in result.explanation
    assert 'missing_decision' in result.explanation
    assert len(fake.calls) == 3
    assert sleeps == []


def test_echoed_template_falls_back_to_unsure() -> None:
    _, template = prompts.build_evaluation_prompt('Foo', 'Bar', 'criteria', SETTINGS)
    echoed = template.split('Respond in the following format:\n', 1)[1]
    client, fake, _ = make_client([echoed], max_retries=1)
    result = client.evaluate('Foo', 'Bar', 'criteria', SETTINGS)
    assert result.decision is Decision.UNSURE
    assert result.failed
    assert len(fake.calls) == 2


def test_malformed_then_valid_reply() -> None:
    client, fake, _ = make_client(['', 'Decision: Exclude\nExplanation: Rat model.'])
    result = client.evaluate('Foo', 'Bar', 'Must be human study', SETTINGS)
    assert result.decision is Decision.EXCLUDE
    assert len(fake.calls) == 2


def test_rate_limit_backs_off_exponentially() -> None:
    client, fake, sleeps = make_client(
        [rate_limit_error(), rate_limit_error(), 'Decision: Include\nExplanation: ok'],
        retry_delay=0.5,
    )
    result = client.evaluate('Foo', 'Bar', 'criteria', SETTINGS)
    assert result.decision is Decision.INCLUDE
    assert sleeps == [0.5, 1.0]
    assert len(fake.calls) == 3


def test_connection_errors_exhaust_attempts() -> None:
    client, fake, sleeps = make_client([openai.APIConnectionError(request=_REQUEST)], max_retries=1)
    result = client.evaluate('Foo', 'Bar', 'criteria', SETTINGS)
    assert result.failed
    assert len(fake.calls) == 2
    # No wait after the final attempt.
    assert sleeps == [1.0]


def test_unexpected_errors_are_retried_without_sleep() -> None:
    client, fake, sleeps = make_client([RuntimeError('boom'), 'Decision: Unsure\nExplanation: unclear'])
    result = client.evaluate('Foo', 'Bar', 'criteria', SETTINGS)
    assert result.decision is Decision.UNSURE
    assert not result.failed
    assert sleeps == []


def test_missing_settings_raise_before_any_request() -> None:
    client, fake, _ = make_client(['Decision: Include\nExplanation: ok'])
    with pytest.raises(ConfigurationError):
        client.evaluate('Foo', 'Bar', 'criteria', None)
    assert fake.calls == []


def test_missing_api_key_fails_at_construction(monkeypatch) -> None:
    monkeypatch.delenv('OPENAI_API_KEY', raising=False)
    with pytest.raises(ConfigurationError):
        evaluator.EvaluationClient()
