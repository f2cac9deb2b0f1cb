"""
Batch evaluation of articles awaiting an AI decision.

One call to :func:`run_evaluation_batch` processes a bounded batch: it
resolves the settings version to use, claims up to ``batch_size``
flagged articles, evaluates them one after another and writes each
result back.  A failure on one article is logged and does not stop the
rest of the batch; the failed article keeps its lease and is retried by
a later run once the lease has expired.  The trigger (a cron request,
the CLI) lives outside this module.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from . import database as db
from .config import DEFAULT_BATCH_SIZE, DEFAULT_LEASE_SECONDS, ConfigurationError
from .evaluator import EvaluationClient
from .models import AISettings

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    """Summary of one batch run."""

    settings_id: Optional[int]
    selected: int = 0
    evaluated: int = 0
    failed: int = 0
    fallbacks: int = 0
    failed_article_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_settings(settings_id: Optional[int] = None) -> AISettings:
    """Load an explicit settings version, or the latest one.

    Raises:
        ConfigurationError: If the version (or any version) is missing.
    """
    settings = db.get_ai_settings(settings_id)
    if settings is None:
        if settings_id is not None:
            raise ConfigurationError(f"AI settings version {settings_id} not found")
        raise ConfigurationError("No AI settings found in the database")
    return settings


def _finish_sessions(session_ids: List[str]) -> None:
    for session_id in session_ids:
        try:
            if db.session_has_pending(session_id):
                db.touch_session_last_evaluated(session_id)
            else:
                db.mark_session_evaluation_awaiting(session_id)
        except db.StoreError as e:
            logger.error(f"Failed to update evaluation status of session {session_id}: {e}")


def run_evaluation_batch(
    evaluator: EvaluationClient,
    settings_id: Optional[int] = None,
    batch_size: Optional[int] = None,
    lease_seconds: int = DEFAULT_LEASE_SECONDS,
) -> BatchReport:
    """Evaluate one batch of pending articles.

    The settings version is resolved once, before any article is
    claimed, and recorded on every article evaluated in this run.

    Raises:
        ConfigurationError: If no usable settings version exists.
        StoreError: If the pending articles cannot be claimed.
    """
    settings = resolve_settings(settings_id)
    limit = batch_size or settings.batch_size or DEFAULT_BATCH_SIZE
    articles = db.claim_pending_articles(limit, lease_seconds=lease_seconds)
    report = BatchReport(settings_id=settings.id, selected=len(articles))
    if not articles:
        logger.info("No articles awaiting AI evaluation")
        return report

    logger.info(f"Processing {len(articles)} articles with AI settings version {settings.id}...")
    touched_sessions: List[str] = []
    for article in articles:
        if article['session_id'] not in touched_sessions:
            touched_sessions.append(article['session_id'])
        try:
            criteria = db.get_session_criteria_for_file(article['file_id'])
            if not criteria:
                raise ValueError(f"No criteria found for session {article['session_id']}")
            result = evaluator.evaluate(article['title'], article['abstract'], criteria, settings)
            db.update_article_evaluation(
                article['id'],
                result.decision,
                result.explanation,
                settings_id=settings.id,
                claim_token=article['claim_token'],
            )
            report.evaluated += 1
            if result.failed:
                report.fallbacks += 1
            logger.info(f"Article {article['id']} evaluation result: {result.decision.value}")
        except Exception as e:
            report.failed += 1
            report.failed_article_ids.append(article['id'])
            # The lease is kept, so the article waits for it to expire before a retry.
            logger.error(f"Error processing article {article['id']}: {e}")

    _finish_sessions(touched_sessions)
    logger.info(
        f"Batch complete: {report.evaluated} evaluated, {report.failed} failed, "
        f"{report.fallbacks} fallback decisions"
    )
    return report
