"""Tests for the article file parser and the ingestion validator."""

from __future__ import annotations

from revai.backend import data_validator, parsers
from revai.backend.models import ParsedArticle
from revai.tests.conftest import SAMPLE_FILE

OVID_RECORD = """<7>
Accession Number
  31234567
Title
  Effects of exercise on sleep quality
  in older adults
Source
  J Sleep Res. 2020;29(1)
Authors
  Doe J; Smith A
Institution
  University Hospital
Abstract
  Background: Poor sleep is common in older adults.
  Methods: We randomised 120 participants.
Link to the Ovid Full Text or citation:
  http://ovidsp.ovid.com/example
"""


def test_parse_two_article_example() -> None:
    articles = parsers.parse_articles(SAMPLE_FILE)
    assert [a.id for a in articles] == [1, 2]
    assert [a.title for a in articles] == ['Foo', 'Baz']
    assert [a.abstract for a in articles] == ['Bar', 'Qux']
    assert articles[0].full_text == "<1> Title\n  Foo\nAbstract\n  Bar"


def test_parse_ovid_record_sections() -> None:
    """Title stops at the Source header and the abstract at the link line."""
    (article,) = parsers.parse_articles("Export header\n" + OVID_RECORD)
    assert article.id == 7
    assert article.title == "Effects of exercise on sleep quality\n  in older adults"
    assert article.abstract.startswith("Background: Poor sleep")
    assert article.abstract.endswith("120 participants.")
    sections = parsers.extract_article_sections(article)
    assert sections['accession_number'] == '31234567'
    assert sections['source'] == 'J Sleep Res. 2020;29(1)'
    assert sections['authors'] == 'Doe J; Smith A'


def test_no_markers_returns_empty_list() -> None:
    assert parsers.parse_articles("Title\n  Foo\nAbstract\n  Bar\n") == []
    assert parsers.parse_articles("") == []


def test_missing_sections_yield_empty_strings() -> None:
    (article,) = parsers.parse_articles("<3>\nSomething without headers\n")
    assert article.title == ''
    assert article.abstract == ''
    assert article.full_text == "<3>\nSomething without headers"


def test_headers_are_case_insensitive_and_copyright_ends_abstract() -> None:
    text = "<1>\nTITLE\n  Upper case\nABSTRACT\n  Body text.\nCopyright 2020 Publisher\n"
    (article,) = parsers.parse_articles(text)
    assert article.title == 'Upper case'
    assert article.abstract == 'Body text.'


def test_zero_marker_falls_back_to_position() -> None:
    articles = parsers.parse_articles("<0>\nTitle\n  A\n<5>\nTitle\n  B\n")
    assert [a.id for a in articles] == [1, 5]


def test_reparsing_full_text_is_stable() -> None:
    for article in parsers.parse_articles(SAMPLE_FILE + OVID_RECORD):
        (again,) = parsers.parse_articles(article.full_text)
        assert again.title == article.title
        assert again.abstract == article.abstract


def test_full_texts_cover_the_input() -> None:
    articles = parsers.parse_articles(SAMPLE_FILE)
    joined = ''.join(a.full_text for a in articles)
    assert ''.join(SAMPLE_FILE.split()) == ''.join(joined.split())


def test_validator_reports_missing_abstracts() -> None:
    articles = [
        ParsedArticle(id=1, title='A valid title', abstract='x' * 60, full_text=''),
        ParsedArticle(id=2, title='Another title', abstract='', full_text=''),
        ParsedArticle(id=2, title='', abstract='', full_text=''),
    ]
    report = data_validator.ArticleValidator().validate_articles(articles)
    assert report['summary']['total'] == 3
    assert report['summary']['valid'] == 1
    assert report['summary']['duplicate_id'] == 1
    assert report['critical_issues']['missing_abstracts'] == 2
    assert round(report['quality_score'], 1) == 33.3
    assert len(report['problematic_articles']) == 2
    assert report['recommendations']
