"""
Data quality checks for parsed articles.

The validator inspects the records produced by the article parser
before they are stored and reports how many of them lack a usable
title or abstract.  Those articles are still stored and evaluated from
their full text; the report only tells the reviewer that the export
format may be missing fields.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from .models import ParsedArticle

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 5
MIN_ABSTRACT_LENGTH = 50


class ArticleValidator:
    """Validate a batch of parsed articles.

    Each instance tracks summary statistics about the articles it
    processes.  The entry point is :meth:`validate_articles` which
    returns a report dictionary.
    """

    def __init__(self) -> None:
        self.validation_results: List[Dict[str, Any]] = []
        self.stats: Dict[str, int] = {
            'total': 0,
            'valid': 0,
            'missing_abstract': 0,
            'missing_title': 0,
            'duplicate_id': 0,
        }

    def validate_articles(self, articles: Sequence[ParsedArticle]) -> Dict[str, Any]:
        """Validate every article and return the quality report."""
        self.stats['total'] = len(articles)
        seen_ids = set()
        for article in articles:
            issues = self.validate_single_article(article)
            if article.id in seen_ids:
                issues.append(f'Duplicate article number: {article.id}')
                self.stats['duplicate_id'] += 1
            seen_ids.add(article.id)
            if issues:
                self.validation_results.append({
                    'article_id': article.id,
                    'title': article.title[:50] or 'Unknown',
                    'issues': issues,
                })
        report = self.generate_validation_report()
        if report['critical_issues']['missing_abstracts']:
            logger.info(f"{report['critical_issues']['missing_abstracts']} parsed articles have no usable abstract")
        return report

    def validate_single_article(self, article: ParsedArticle) -> List[str]:
        issues: List[str] = []
        title_ok = len(article.title.strip()) >= MIN_TITLE_LENGTH
        abstract_ok = len(article.abstract.strip()) >= MIN_ABSTRACT_LENGTH
        if not title_ok:
            issues.append('Missing or too short title')
            self.stats['missing_title'] += 1
        if not abstract_ok:
            issues.append('Missing or insufficient abstract')
            self.stats['missing_abstract'] += 1
        if title_ok and abstract_ok:
            self.stats['valid'] += 1
        return issues

    def generate_validation_report(self) -> Dict[str, Any]:
        """Compile a report of validation statistics and recommendations."""
        total = self.stats['total']
        quality_score = (self.stats['valid'] / total * 100) if total > 0 else 0
        report: Dict[str, Any] = {
            'summary': self.stats.copy(),
            'quality_score': quality_score,
            'critical_issues': {
                'missing_abstracts': self.stats['missing_abstract'],
                'missing_abstracts_pct': (self.stats['missing_abstract'] / total * 100) if total > 0 else 0,
            },
            'recommendations': [],
            'problematic_articles': self.validation_results[:10],
        }
        if report['critical_issues']['missing_abstracts_pct'] > 20:
            report['recommendations'].append(
                'A high percentage of articles are missing abstracts. Check that the export '
                'includes the Abstract field.'
            )
        if self.stats['duplicate_id'] > 0:
            report['recommendations'].append(
                f'{self.stats["duplicate_id"]} articles reuse a record number already seen in this file.'
            )
        return report
