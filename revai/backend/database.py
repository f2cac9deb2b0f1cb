"""
Database module for the RevAI application.

This module encapsulates all persistence logic for the app.  It uses
SQLAlchemy to manage a SQLite or PostgreSQL database holding review
sessions, uploaded files, their articles and the versioned AI
settings used to evaluate them.

Every public function opens its own transactional scope through
:func:`get_db` and returns plain dictionaries (or the dataclasses from
:mod:`revai.backend.models`) so callers never hold on to ORM objects
after the session is closed.  Failures are raised as
:class:`StoreError`; missing rows as :class:`NotFoundError`.  Nothing
in this module retries.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    or_,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_database_url
from .models import AISettings, Criterion, Decision, ParsedArticle

logger = logging.getLogger(__name__)

# SQLAlchemy base class used to declare models
Base = declarative_base()


class StoreError(RuntimeError):
    """Raised when a query or update against the store fails."""


class NotFoundError(StoreError):
    """Raised when a requested row does not exist."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ReviewSession(Base):
    """A reviewer's top-level unit of work.

    ``criteria`` holds the ordered inclusion criteria as a JSON encoded
    list of ``{"id", "text"}`` objects.  The two count columns cache
    the number of files and articles below the session.
    """

    __tablename__ = 'review_sessions'

    id = Column(String, primary_key=True, default=_new_id)
    title = Column(Text, nullable=False, default='')
    criteria = Column(Text, nullable=False, default='[]')
    articles_count = Column(Integer, nullable=False, default=0)
    files_count = Column(Integer, nullable=False, default=0)
    ai_evaluation_running = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    last_evaluated_at = Column(DateTime(timezone=True), nullable=True)

    files = relationship('File', back_populates='session', cascade='all, delete-orphan')


class File(Base):
    """One uploaded batch of articles."""

    __tablename__ = 'files'

    id = Column(String, primary_key=True, default=_new_id)
    session_id = Column(String, ForeignKey('review_sessions.id', ondelete='CASCADE'), nullable=False, index=True)
    filename = Column(Text, nullable=False)
    articles_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship('ReviewSession', back_populates='files')
    articles = relationship('Article', back_populates='file', cascade='all, delete-orphan')


class Article(Base):
    """ORM model for a single article and its screening state.

    ``claim_token``/``claimed_at`` form the lease taken by a batch run
    while the article is being evaluated; ``ai_settings_id`` records
    which settings version produced ``ai_decision``.
    """

    __tablename__ = 'articles'

    id = Column(String, primary_key=True, default=_new_id)
    file_id = Column(String, ForeignKey('files.id', ondelete='CASCADE'), nullable=False, index=True)
    number = Column(Integer, nullable=False, default=0)  # marker number in the uploaded file
    title = Column(Text, nullable=False, default='')
    abstract = Column(Text, nullable=False, default='')
    full_text = Column(Text, nullable=False, default='')
    ai_decision = Column(String, nullable=True, index=True)
    ai_explanation = Column(Text, nullable=True)
    user_decision = Column(String, nullable=True, index=True)
    needs_review = Column(Boolean, nullable=False, default=True, index=True)
    needs_ai_evaluation = Column(Boolean, nullable=False, default=True, index=True)
    ai_settings_id = Column(Integer, ForeignKey('ai_settings.id'), nullable=True)
    claim_token = Column(String, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    evaluated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    file = relationship('File', back_populates='articles')


class AISettingsVersion(Base):
    """One immutable version of the AI evaluation settings.

    The integer primary key doubles as the version number; saving new
    settings always inserts a new row.
    """

    __tablename__ = 'ai_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    instructions = Column(Text, nullable=False)
    temperature = Column(Float, nullable=False)
    max_tokens = Column(Integer, nullable=False)
    seed = Column(Integer, nullable=True)
    model = Column(String, nullable=False)
    batch_size = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# Create engine and session factory.  StaticPool is used for SQLite so
# that an in-memory database is shared across threads and sessions.
DATABASE_URL = get_database_url()
if DATABASE_URL.startswith('sqlite'):
    engine = create_engine(
        DATABASE_URL,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool
    )
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db() -> None:
    """Create all tables defined on the Base metadata if missing."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialised (tables created if missing)")


@contextmanager
def get_db() -> Iterator[Session]:
    """Provide a transactional scope for database operations.

    The session is committed when the block exits normally and rolled
    back otherwise.  SQLAlchemy errors are re-raised as
    :class:`StoreError`.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error: {e}")
        raise StoreError(str(e)) from e
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _encode_criteria(criteria: Any) -> str:
    """Serialise criteria given as text, strings, dicts or Criterion objects."""
    if criteria is None:
        return '[]'
    if isinstance(criteria, str):
        criteria = [line for line in criteria.splitlines() if line.strip()]
    encoded: List[Dict[str, str]] = []
    for index, item in enumerate(criteria, start=1):
        if isinstance(item, Criterion):
            encoded.append({'id': item.id, 'text': item.text})
        elif isinstance(item, dict):
            encoded.append({'id': str(item.get('id') or index), 'text': str(item.get('text', ''))})
        else:
            encoded.append({'id': str(index), 'text': str(item)})
    return json.dumps(encoded)


def _decode_criteria(raw: Optional[str]) -> List[Criterion]:
    if not raw:
        return []
    return [Criterion(id=str(c.get('id', '')), text=c.get('text', '')) for c in json.loads(raw)]


def _session_to_dict(review: ReviewSession) -> Dict[str, Any]:
    return {
        'id': review.id,
        'title': review.title,
        'criteria': [{'id': c.id, 'text': c.text} for c in _decode_criteria(review.criteria)],
        'articles_count': review.articles_count,
        'files_count': review.files_count,
        'ai_evaluation_running': review.ai_evaluation_running,
        'created_at': _isoformat(review.created_at),
        'updated_at': _isoformat(review.updated_at),
        'last_evaluated_at': _isoformat(review.last_evaluated_at),
    }


def _file_to_dict(file: File) -> Dict[str, Any]:
    return {
        'id': file.id,
        'session_id': file.session_id,
        'filename': file.filename,
        'articles_count': file.articles_count,
        'created_at': _isoformat(file.created_at),
    }


def _article_to_dict(article: Article) -> Dict[str, Any]:
    return {
        'id': article.id,
        'file_id': article.file_id,
        'number': article.number,
        'title': article.title,
        'abstract': article.abstract,
        'full_text': article.full_text,
        'ai_decision': article.ai_decision,
        'ai_explanation': article.ai_explanation,
        'user_decision': article.user_decision,
        'needs_review': article.needs_review,
        'needs_ai_evaluation': article.needs_ai_evaluation,
        'ai_settings_id': article.ai_settings_id,
        'evaluated_at': _isoformat(article.evaluated_at),
    }


def _settings_to_model(row: AISettingsVersion) -> AISettings:
    return AISettings(
        id=row.id,
        instructions=row.instructions,
        temperature=row.temperature,
        max_tokens=row.max_tokens,
        seed=row.seed,
        model=row.model,
        batch_size=row.batch_size,
    )


def _require_session(session: Session, session_id: str) -> ReviewSession:
    review = session.get(ReviewSession, session_id)
    if review is None:
        raise NotFoundError(f"Review session {session_id} not found")
    return review


def _recount(session: Session, review: ReviewSession) -> None:
    """Recompute the cached file and article counts of a session."""
    session.flush()
    review.files_count = session.query(File).filter(File.session_id == review.id).count()
    review.articles_count = (
        session.query(Article).join(File).filter(File.session_id == review.id).count()
    )


# ---------------------------------------------------------------------------
# Review sessions
# ---------------------------------------------------------------------------

def create_session(title: str, criteria: Any = None) -> Dict[str, Any]:
    """Create a new review session and return it."""
    with get_db() as session:
        review = ReviewSession(title=title or 'Untitled review', criteria=_encode_criteria(criteria))
        session.add(review)
        session.flush()
        logger.info(f"Created review session {review.id}")
        return _session_to_dict(review)


def list_sessions() -> List[Dict[str, Any]]:
    """Return all review sessions, newest first."""
    with get_db() as session:
        query = session.query(ReviewSession).order_by(ReviewSession.created_at.desc())
        return [_session_to_dict(review) for review in query]


def get_session(session_id: str) -> Dict[str, Any]:
    """Fetch a review session by ID or raise :class:`NotFoundError`."""
    with get_db() as session:
        return _session_to_dict(_require_session(session, session_id))


def get_session_criteria(session_id: str) -> List[Criterion]:
    with get_db() as session:
        return _decode_criteria(_require_session(session, session_id).criteria)


def update_session(
    session_id: str,
    title: Optional[str] = None,
    criteria: Any = None,
) -> Dict[str, Any]:
    """Update the title and/or criteria of a session."""
    with get_db() as session:
        review = _require_session(session, session_id)
        if title is not None:
            review.title = title
        if criteria is not None:
            review.criteria = _encode_criteria(criteria)
        review.updated_at = _utcnow()
        return _session_to_dict(review)


def delete_session(session_id: str) -> None:
    """Delete a session together with its files and articles."""
    with get_db() as session:
        session.delete(_require_session(session, session_id))
    logger.info(f"Deleted review session {session_id}")


def mark_session_evaluation_running(session_id: str) -> None:
    with get_db() as session:
        review = _require_session(session, session_id)
        review.ai_evaluation_running = True
        review.last_evaluated_at = _utcnow()


def mark_session_evaluation_awaiting(session_id: str) -> None:
    """Clear the running flag once no article of the session is pending."""
    with get_db() as session:
        review = _require_session(session, session_id)
        review.ai_evaluation_running = False
        review.last_evaluated_at = _utcnow()


def touch_session_last_evaluated(session_id: str) -> None:
    with get_db() as session:
        _require_session(session, session_id).last_evaluated_at = _utcnow()


def session_has_pending(session_id: str) -> bool:
    """Return True while any article of the session awaits AI evaluation."""
    with get_db() as session:
        pending = (
            session.query(Article.id)
            .join(File)
            .filter(File.session_id == session_id, Article.needs_ai_evaluation.is_(True))
            .first()
        )
        return pending is not None


def recount_session(session_id: str) -> Dict[str, Any]:
    with get_db() as session:
        review = _require_session(session, session_id)
        _recount(session, review)
        return _session_to_dict(review)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def insert_file(session_id: str, filename: str, articles_count: int = 0) -> str:
    """Insert a file record below a session and return its ID."""
    with get_db() as session:
        review = _require_session(session, session_id)
        file = File(session_id=review.id, filename=filename, articles_count=articles_count)
        session.add(file)
        review.updated_at = _utcnow()
        session.flush()
        _recount(session, review)
        return file.id


def get_files(session_id: str) -> List[Dict[str, Any]]:
    with get_db() as session:
        query = session.query(File).filter(File.session_id == session_id).order_by(File.created_at.desc())
        return [_file_to_dict(f) for f in query]


def delete_file(file_id: str) -> None:
    """Delete a file with its articles and correct the session counts."""
    with get_db() as session:
        file = session.get(File, file_id)
        if file is None:
            raise NotFoundError(f"File {file_id} not found")
        review = file.session
        session.delete(file)
        _recount(session, review)
    logger.info(f"Deleted file {file_id}")


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------

def _record_fields(record: Any) -> Dict[str, Any]:
    if isinstance(record, ParsedArticle):
        return {
            'number': record.id,
            'title': record.title,
            'abstract': record.abstract,
            'full_text': record.full_text,
        }
    return {
        'number': int(record.get('id') or record.get('number') or 0),
        'title': record.get('title') or '',
        'abstract': record.get('abstract') or '',
        'full_text': record.get('full_text') or record.get('fullText') or '',
    }


def insert_articles(file_id: str, records: Sequence[Any]) -> int:
    """Insert the parsed articles of a file in one transaction.

    Either every record is stored or none is.  The file and session
    counts are updated from the table in the same transaction.
    Returns the number of inserted articles.
    """
    with get_db() as session:
        file = session.get(File, file_id)
        if file is None:
            raise NotFoundError(f"File {file_id} not found")
        session.add_all(
            Article(file_id=file_id, needs_review=True, needs_ai_evaluation=True, **_record_fields(r))
            for r in records
        )
        session.flush()
        file.articles_count = session.query(Article).filter(Article.file_id == file_id).count()
        file.updated_at = _utcnow()
        _recount(session, file.session)
        logger.info(f"Inserted {len(records)} articles into file {file_id}")
        return len(records)


def get_articles(file_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """Return the articles belonging to the given files."""
    file_ids = list(file_ids)
    if not file_ids:
        return []
    with get_db() as session:
        query = (
            session.query(Article)
            .filter(Article.file_id.in_(file_ids))
            .order_by(Article.file_id, Article.number)
        )
        return [_article_to_dict(a) for a in query]


def list_session_articles(session_id: str) -> List[Dict[str, Any]]:
    with get_db() as session:
        _require_session(session, session_id)
        query = (
            session.query(Article)
            .join(File)
            .filter(File.session_id == session_id)
            .order_by(File.created_at, Article.number)
        )
        return [_article_to_dict(a) for a in query]


def get_article_by_id(article_id: str) -> Optional[Dict[str, Any]]:
    """Return the public projection of an article, or ``None``."""
    with get_db() as session:
        article = session.get(Article, article_id)
        if not article:
            return None
        return {
            'id': article.id,
            'title': article.title,
            'abstract': article.abstract,
            'ai_decision': article.ai_decision,
            'ai_explanation': article.ai_explanation,
            'user_decision': article.user_decision,
        }


def update_article_evaluation(
    article_id: str,
    decision: Decision,
    explanation: str,
    settings_id: Optional[int] = None,
    claim_token: Optional[str] = None,
) -> None:
    """Store an AI decision and clear the evaluation flag.

    When ``claim_token`` is given the write only succeeds if the batch
    run still holds the article's lease.
    """
    decision = Decision(decision)
    with get_db() as session:
        query = session.query(Article).filter(Article.id == article_id)
        if claim_token is not None:
            query = query.filter(Article.claim_token == claim_token)
        updated = query.update(
            {
                Article.ai_decision: decision.value,
                Article.ai_explanation: explanation,
                Article.needs_ai_evaluation: False,
                Article.ai_settings_id: settings_id,
                Article.claim_token: None,
                Article.claimed_at: None,
                Article.evaluated_at: _utcnow(),
                Article.updated_at: _utcnow(),
            },
            synchronize_session=False,
        )
        if not updated:
            if claim_token is not None and session.get(Article, article_id) is not None:
                raise StoreError(f"Lease on article {article_id} was lost before the result was written")
            raise NotFoundError(f"Article {article_id} not found")


def update_article_user_decision(article_id: str, decision: Decision) -> Dict[str, Any]:
    """Record a reviewer decision; the article no longer needs review."""
    decision = Decision(decision)
    with get_db() as session:
        article = session.get(Article, article_id)
        if article is None:
            raise NotFoundError(f"Article {article_id} not found")
        article.user_decision = decision.value
        article.needs_review = False
        article.updated_at = _utcnow()
        return _article_to_dict(article)


def mark_articles_for_evaluation(article_ids: Iterable[str], session_id: Optional[str] = None) -> int:
    """Flag articles for AI evaluation and return how many were flagged.

    With ``session_id`` only articles whose file belongs to that session
    are touched.
    """
    article_ids = list(article_ids)
    if not article_ids:
        return 0
    with get_db() as session:
        query = session.query(Article.id).filter(Article.id.in_(article_ids))
        if session_id is not None:
            _require_session(session, session_id)
            query = query.join(File).filter(File.session_id == session_id)
        ids = [row.id for row in query]
        if not ids:
            return 0
        session.query(Article).filter(Article.id.in_(ids)).update(
            {
                Article.needs_ai_evaluation: True,
                Article.claim_token: None,
                Article.claimed_at: None,
            },
            synchronize_session=False,
        )
        return len(ids)


def claim_pending_articles(
    limit: int,
    lease_seconds: int = 600,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Claim up to ``limit`` articles awaiting AI evaluation.

    An article can be claimed when it is flagged and either unclaimed or
    its lease is older than ``lease_seconds``.  Articles never attempted come
    before articles whose earlier lease expired, so articles that keep
    failing cannot hold up the rest of the queue.  Each candidate is taken
    with a conditional update, so a row claimed by a concurrent run in
    the meantime is skipped.  Returned dictionaries carry the
    ``claim_token`` needed to write the result back.
    """
    now = now or _utcnow()
    cutoff = now - timedelta(seconds=lease_seconds)
    token = uuid.uuid4().hex
    claimable = (
        Article.needs_ai_evaluation.is_(True),
        or_(Article.claimed_at.is_(None), Article.claimed_at < cutoff),
    )
    with get_db() as session:
        candidates = (
            session.query(Article.id)
            .filter(*claimable)
            .order_by(Article.claimed_at.asc().nulls_first(), Article.created_at, Article.number)
            .limit(limit)
            .all()
        )
        claimed: List[str] = []
        for (article_id,) in candidates:
            updated = (
                session.query(Article)
                .filter(Article.id == article_id, *claimable)
                .update({Article.claim_token: token, Article.claimed_at: now}, synchronize_session=False)
            )
            if updated:
                claimed.append(article_id)
        if not claimed:
            return []
        rows = (
            session.query(Article, File.session_id)
            .join(File)
            .filter(Article.id.in_(claimed))
            .order_by(Article.created_at, Article.number)
            .all()
        )
        return [
            {
                'id': article.id,
                'title': article.title,
                'abstract': article.abstract,
                'file_id': article.file_id,
                'session_id': session_id,
                'claim_token': token,
            }
            for article, session_id in rows
        ]


def get_session_criteria_for_file(file_id: str) -> List[Criterion]:
    """Resolve the criteria of the session owning ``file_id``."""
    with get_db() as session:
        file = session.get(File, file_id)
        if file is None:
            raise NotFoundError(f"File {file_id} not found")
        return _decode_criteria(file.session.criteria)


# ---------------------------------------------------------------------------
# AI settings
# ---------------------------------------------------------------------------

def create_ai_settings(
    instructions: str,
    temperature: float,
    max_tokens: int,
    seed: Optional[int],
    model: str,
    batch_size: Optional[int] = None,
) -> AISettings:
    """Store a new settings version and return it."""
    with get_db() as session:
        row = AISettingsVersion(
            instructions=instructions,
            temperature=temperature,
            max_tokens=max_tokens,
            seed=seed,
            model=model,
            batch_size=batch_size,
        )
        session.add(row)
        session.flush()
        logger.info(f"Stored AI settings version {row.id} (model={model})")
        return _settings_to_model(row)


def get_ai_settings(settings_id: Optional[int] = None) -> Optional[AISettings]:
    """Return a specific settings version, or the latest when no ID is given.

    ``None`` is returned when the requested version (or any version)
    does not exist.
    """
    with get_db() as session:
        if settings_id is not None:
            row = session.get(AISettingsVersion, settings_id)
        else:
            row = (
                session.query(AISettingsVersion)
                .order_by(AISettingsVersion.created_at.desc(), AISettingsVersion.id.desc())
                .first()
            )
        return _settings_to_model(row) if row else None
