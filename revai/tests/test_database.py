"""Tests for the persistence layer against in-memory SQLite."""

from __future__ import annotations

from datetime import timedelta

import pytest

from revai.backend import parsers
from revai.backend.models import Decision
from revai.tests.conftest import SAMPLE_FILE


def _session_with_file(db, criteria=None):
    session = db.create_session('Sleep review', criteria or ['Must be human study'])
    file_id = db.insert_file(session['id'], 'refs.txt')
    db.insert_articles(file_id, parsers.parse_articles(SAMPLE_FILE))
    return session['id'], file_id


def test_session_crud_and_criteria_order(db) -> None:
    session = db.create_session('Review', [{'id': 'c2', 'text': 'B'}, 'A'])
    assert [c['text'] for c in session['criteria']] == ['B', 'A']
    assert db.get_session(session['id'])['title'] == 'Review'
    updated = db.update_session(session['id'], title='Renamed')
    assert updated['title'] == 'Renamed'
    assert [c.text for c in db.get_session_criteria(session['id'])] == ['B', 'A']
    assert [s['id'] for s in db.list_sessions()] == [session['id']]
    db.delete_session(session['id'])
    with pytest.raises(db.NotFoundError):
        db.get_session(session['id'])


def test_insert_articles_updates_counts(db) -> None:
    session_id, file_id = _session_with_file(db)
    session = db.get_session(session_id)
    assert session['files_count'] == 1
    assert session['articles_count'] == 2
    (file,) = db.get_files(session_id)
    assert file['articles_count'] == 2
    articles = db.get_articles([file_id])
    assert [a['title'] for a in articles] == ['Foo', 'Baz']
    assert all(a['needs_ai_evaluation'] and a['needs_review'] for a in articles)


def test_insert_articles_is_all_or_nothing(db) -> None:
    session = db.create_session('Review', ['A'])
    file_id = db.insert_file(session['id'], 'broken.txt')
    records = [
        {'id': 1, 'title': 'Good', 'abstract': 'Fine', 'full_text': '<1>'},
        {'id': 'not-a-number', 'title': 'Bad'},
    ]
    with pytest.raises(ValueError):
        db.insert_articles(file_id, records)
    assert db.get_articles([file_id]) == []
    db.delete_file(file_id)
    session = db.get_session(session['id'])
    assert session['files_count'] == 0
    assert session['articles_count'] == 0


def test_delete_file_recounts_session(db) -> None:
    session_id, file_id = _session_with_file(db)
    other = db.insert_file(session_id, 'more.txt')
    db.insert_articles(other, parsers.parse_articles("<1>\nTitle\n  Extra\n"))
    assert db.get_session(session_id)['articles_count'] == 3
    db.delete_file(file_id)
    session = db.get_session(session_id)
    assert session['files_count'] == 1
    assert session['articles_count'] == 1
    with pytest.raises(db.NotFoundError):
        db.delete_file(file_id)


def test_article_projection(db) -> None:
    _, file_id = _session_with_file(db)
    article = db.get_articles([file_id])[0]
    projection = db.get_article_by_id(article['id'])
    assert set(projection) == {'id', 'title', 'abstract', 'ai_decision', 'ai_explanation', 'user_decision'}
    assert projection['title'] == 'Foo'
    assert db.get_article_by_id('missing') is None


def test_claim_lease_and_conditional_write(db, settings) -> None:
    _, file_id = _session_with_file(db)
    claimed = db.claim_pending_articles(10)
    assert len(claimed) == 2
    # Leased articles are not handed out again until the lease expires.
    assert db.claim_pending_articles(10) == []
    later = db._utcnow() + timedelta(seconds=601)
    reclaimed = db.claim_pending_articles(1, lease_seconds=600, now=later)
    assert len(reclaimed) == 1
    stale, fresh = claimed[0], reclaimed[0]
    assert stale['id'] == fresh['id']
    with pytest.raises(db.StoreError):
        db.update_article_evaluation(stale['id'], Decision.INCLUDE, 'late', claim_token=stale['claim_token'])
    db.update_article_evaluation(
        fresh['id'], Decision.INCLUDE, 'Human study', settings_id=settings.id, claim_token=fresh['claim_token'],
    )
    article = next(a for a in db.get_articles([file_id]) if a['id'] == fresh['id'])
    assert article['ai_decision'] == 'Include'
    assert article['ai_settings_id'] == settings.id
    assert not article['needs_ai_evaluation']


def test_never_attempted_articles_are_claimed_first(db) -> None:
    _session_with_file(db)
    first = db.claim_pending_articles(1)[0]
    assert first['title'] == 'Foo'
    # Foo's lease has expired, but Baz has never been attempted.
    later = db._utcnow() + timedelta(seconds=601)
    assert [a['title'] for a in db.claim_pending_articles(1, now=later)] == ['Baz']
    even_later = later + timedelta(seconds=601)
    assert [a['title'] for a in db.claim_pending_articles(1, now=even_later)] == ['Foo']


def test_mark_articles_scoped_to_session(db) -> None:
    session_id, file_id = _session_with_file(db)
    other_session, other_file = _session_with_file(db)
    ids = [a['id'] for a in db.get_articles([file_id, other_file])]
    for article_id in ids:
        db.update_article_evaluation(article_id, Decision.EXCLUDE, 'done')
    assert not db.session_has_pending(session_id)
    assert db.mark_articles_for_evaluation(ids, session_id=session_id) == 2
    assert db.session_has_pending(session_id)
    assert not db.session_has_pending(other_session)
    assert db.mark_articles_for_evaluation([]) == 0


def test_user_decision_clears_review_flag(db) -> None:
    _, file_id = _session_with_file(db)
    article_id = db.get_articles([file_id])[0]['id']
    updated = db.update_article_user_decision(article_id, Decision.EXCLUDE)
    assert updated['user_decision'] == 'Exclude'
    assert updated['needs_review'] is False
    with pytest.raises(db.NotFoundError):
        db.update_article_user_decision('missing', Decision.INCLUDE)


def test_settings_are_versioned(db) -> None:
    assert db.get_ai_settings() is None
    first = db.create_ai_settings('v1', 0.1, 500, 1, 'gpt-4o-mini')
    second = db.create_ai_settings('v2', 0.3, 200, None, 'gpt-4o')
    assert second.id > first.id
    assert db.get_ai_settings().instructions == 'v2'
    assert db.get_ai_settings(first.id).instructions == 'v1'
    assert db.get_ai_settings(9999) is None


def test_session_running_flags(db) -> None:
    session_id, _ = _session_with_file(db)
    db.mark_session_evaluation_running(session_id)
    session = db.get_session(session_id)
    assert session['ai_evaluation_running'] is True
    assert session['last_evaluated_at'] is not None
    db.mark_session_evaluation_awaiting(session_id)
    assert db.get_session(session_id)['ai_evaluation_running'] is False
