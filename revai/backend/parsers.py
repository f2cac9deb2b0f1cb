"""
Article file parser for the RevAI application.

Uploaded files are plain text database exports in which every record
starts with a numbered marker on its own line, for example::

    <1>
    Accession Number
      12345678
    Title
      Effects of exercise on sleep quality
    Source
      J Sleep Res. 2020;29(1)
    Abstract
      Background ...
    Link to the Ovid Full Text or citation:
      http://...

The parser splits the text into one segment per marker and extracts
the title and the abstract from each segment with regular expressions.
It performs no I/O and is deterministic for identical input.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Tuple

from .models import ParsedArticle

logger = logging.getLogger(__name__)

# A record marker such as ``<12>`` at the start of a line.
MARKER_RE = re.compile(r'^[ \t]*<(\d+)>', re.MULTILINE)

# Headers that terminate the title section.
_TITLE_STOP_HEADERS = r'(?:Source|Authors?|Institution|Publisher|Abstract)\b'

TITLE_RE = re.compile(
    r'^[ \t]*(?:<\d+>[ \t]*)?Title[ \t]*\r?\n'
    r'(.*?)'
    rf'(?=^[ \t]*{_TITLE_STOP_HEADERS}|\Z)',
    re.MULTILINE | re.DOTALL | re.IGNORECASE,
)

ABSTRACT_RE = re.compile(
    r'^[ \t]*(?:<\d+>[ \t]*)?Abstract[ \t]*\r?\n'
    r'(.*?)'
    r'(?=Link to|Copyright|\Z)',
    re.MULTILINE | re.DOTALL | re.IGNORECASE,
)

_SECTION_RES = {
    'accession_number': re.compile(
        r'^[ \t]*(?:<\d+>[ \t]*)?Accession Number[ \t]*\r?\n(.*?)(?=^[ \t]*Title\b|\Z)',
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    ),
    'source': re.compile(
        r'^[ \t]*Source[ \t]*\r?\n(.*?)(?=^[ \t]*Authors?\b|\Z)',
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    ),
    'authors': re.compile(
        r'^[ \t]*Authors?[ \t]*\r?\n(.*?)(?=^[ \t]*Institution\b|\Z)',
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    ),
}


def split_segments(text: str) -> List[Tuple[str, str]]:
    """Split ``text`` into ``(marker_number, segment_text)`` pairs.

    Each segment runs from one marker to the next marker or the end of
    the text.  Anything before the first marker is ignored.
    """
    markers = list(MARKER_RE.finditer(text))
    segments = []
    for index, match in enumerate(markers):
        end = markers[index + 1].start() if index + 1 < len(markers) else len(text)
        segments.append((match.group(1), text[match.start():end]))
    return segments


def _article_id(marker: str, position: int) -> int:
    try:
        number = int(marker)
    except ValueError:
        return position
    return number if number > 0 else position


def _extract(pattern: re.Pattern, segment: str) -> str:
    match = pattern.search(segment)
    if match and match.group(1):
        return match.group(1).strip()
    return ''


def parse_article_segment(segment: str, article_id: int) -> ParsedArticle:
    """Build one :class:`ParsedArticle` from a single record's text."""
    return ParsedArticle(
        id=article_id,
        title=_extract(TITLE_RE, segment),
        abstract=_extract(ABSTRACT_RE, segment),
        full_text=segment.strip(),
    )


def parse_articles(text: str) -> List[ParsedArticle]:
    """Parse every article of an uploaded file.

    Returns an empty list when the text contains no ``<N>`` marker;
    callers report that as a validation error.
    """
    segments = split_segments(text or '')
    if not segments:
        logger.info("No article markers found in uploaded text")
        return []
    articles = [
        parse_article_segment(segment, _article_id(marker, position))
        for position, (marker, segment) in enumerate(segments, start=1)
    ]
    logger.info(f"Parsed {len(articles)} articles")
    return articles


def extract_article_sections(article: ParsedArticle) -> Dict[str, str]:
    """Extract the accession number, source and authors of an article."""
    return {name: _extract(pattern, article.full_text) for name, pattern in _SECTION_RES.items()}
