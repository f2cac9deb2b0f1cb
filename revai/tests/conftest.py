"""
Shared fixtures for the RevAI test suite.

Every test that touches the store gets a fresh in-memory SQLite
database: the database module is reloaded after ``DATABASE_URL`` is
set so that a new engine (and therefore a new, empty database) is
created.  No test talks to the OpenAI API.
"""

from __future__ import annotations

import importlib
import os
from types import SimpleNamespace
from typing import Any, List

import pytest

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')

INSTRUCTIONS = "You are a systematic review screener."

SAMPLE_FILE = """<1> Title
  Foo
Abstract
  Bar
<2> Title
  Baz
Abstract
  Qux
"""


@pytest.fixture
def db(monkeypatch):
    """Reload the database module against an empty in-memory database."""
    monkeypatch.setenv('DATABASE_URL', 'sqlite:///:memory:')
    from revai.backend import database
    importlib.reload(database)
    database.init_db()
    return database


@pytest.fixture
def settings(db):
    return db.create_ai_settings(
        instructions=INSTRUCTIONS,
        temperature=0.1,
        max_tokens=500,
        seed=12345,
        model='gpt-4o-mini',
        batch_size=10,
    )


def completion(content: Any) -> SimpleNamespace:
    """Build an object shaped like an OpenAI chat completion."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeOpenAI:
    """Stand-in for the OpenAI client replaying scripted replies.

    Each entry of ``replies`` is either the text content of a completion
    or an exception instance to raise for that call.  Once the script is
    exhausted the last entry is repeated.
    """

    def __init__(self, replies: List[Any]) -> None:
        self.replies = list(replies)
        self.calls: List[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self.create))

    def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return completion(reply)
