"""
Review progress statistics and export.

These helpers summarise the articles of a review session: how many
have an AI decision, how many the reviewer has confirmed, how often
the reviewer agreed with the model, and which articles need a second
look.  They operate on the article dictionaries returned by the
database module and use pandas for the aggregation and CSV export.
"""

from __future__ import annotations

from typing import Any, Dict, List

import pandas as pd  # type: ignore

from .evaluator import FAILURE_NOTE
from .models import Decision

EXPORT_COLUMNS = [
    'number', 'title', 'abstract', 'ai_decision', 'ai_explanation',
    'user_decision', 'final_decision', 'needs_review', 'needs_ai_evaluation',
]

_FAILURE_PREFIX = FAILURE_NOTE.split(':', 1)[0] + ':'


def _frame(articles: List[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(articles)
    for col in EXPORT_COLUMNS + ['id']:
        if col not in df.columns:
            df[col] = None
    return df


def _decision_counts(series: pd.Series) -> Dict[str, int]:
    counts = {d.value: 0 for d in Decision}
    for value, count in series.dropna().value_counts().items():
        counts[str(value)] = int(count)
    return counts


def summarize_session(articles: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Summarise screening progress for a list of articles.

    Returns a dictionary with ``summary`` (counts and rates) and
    ``issues`` (articles or patterns a reviewer should look at).
    """
    df = _frame(articles)
    total = len(df)
    ai_done = df['ai_decision'].notna()
    user_done = df['user_decision'].notna()
    both = df[ai_done & user_done]
    agreements = int((both['ai_decision'] == both['user_decision']).sum()) if len(both) else 0
    agreement_rate = (agreements / len(both)) if len(both) else None
    fallbacks = df['ai_explanation'].fillna('').astype(str).str.startswith(_FAILURE_PREFIX)

    issues: List[Dict[str, Any]] = []
    for _, row in both[both['ai_decision'] != both['user_decision']].iterrows():
        issues.append({
            'type': 'ai_user_disagreement',
            'article_id': row['id'],
            'severity': 'low',
            'description': f"AI suggested {row['ai_decision']} but reviewer chose {row['user_decision']}",
        })
    for _, row in df[fallbacks].iterrows():
        issues.append({
            'type': 'evaluation_failed',
            'article_id': row['id'],
            'severity': 'medium',
            'description': 'AI evaluation failed; decision defaulted to Unsure',
        })
    unsure = int((df['ai_decision'] == Decision.UNSURE.value).sum())
    evaluated = int(ai_done.sum())
    if evaluated and unsure / evaluated > 0.5:
        issues.append({
            'type': 'high_unsure_rate',
            'article_id': 'Overall',
            'severity': 'medium',
            'description': f'The AI was unsure about {unsure / evaluated * 100:.1f}% of evaluated articles',
        })

    summary = {
        'total_articles': total,
        'ai_evaluated': evaluated,
        'pending_ai_evaluation': int(df['needs_ai_evaluation'].fillna(False).astype(bool).sum()),
        'reviewed': int(user_done.sum()),
        'pending_review': int(df['needs_review'].fillna(False).astype(bool).sum()),
        'ai_decisions': _decision_counts(df['ai_decision']),
        'user_decisions': _decision_counts(df['user_decision']),
        'agreement_rate': agreement_rate,
        'evaluation_failures': int(fallbacks.sum()),
        'total_issues': len(issues),
    }
    return {'summary': summary, 'issues': issues}


def export_articles_csv(articles: List[Dict[str, Any]]) -> str:
    """Render the articles of a session as CSV.

    ``final_decision`` is the reviewer decision when present, otherwise
    the AI decision.
    """
    df = _frame(articles)
    df['final_decision'] = df['user_decision'].where(df['user_decision'].notna(), df['ai_decision'])
    return df[EXPORT_COLUMNS].to_csv(index=False)
