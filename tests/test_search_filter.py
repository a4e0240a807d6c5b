"""Tests for Query and the filtered view."""
import pytest

from netlog import InvalidPattern, LogLine, Query, recompute

LINES = [
    'INFO dhcp ack',
    'ERROR radius timeout',
    'info error count=0',
    'WARN roam storm',
    'ERROR auth failed',
]


def as_lines(texts):
    return [LogLine(i + 1, t) for i, t in enumerate(texts)]


class TestQuery:

    def test_empty_is_inactive(self):
        q = Query.build('')
        assert not q.active
        assert not q.test('anything')
        assert list(q.spans('anything')) == []
        assert q.label() == ''

    def test_plain_is_literal_and_case_insensitive(self):
        q = Query.build('a.c')
        assert q.test('xA.Cx')
        assert not q.test('abc')

    def test_regex(self):
        q = Query.build('a.c', regex=True)
        assert q.test('abc')

    def test_invalid_regex(self):
        with pytest.raises(InvalidPattern) as info:
            Query.build('(', regex=True)
        assert isinstance(info.value, ValueError)
        assert info.value.term == '('

    def test_invalid_only_as_regex(self):
        assert Query.build('(').test('f(x)')

    def test_spans_skip_empty_matches(self):
        q = Query.build('x*', regex=True)
        assert list(q.spans('axxb')) == [(1, 3)]

    def test_filter_prefix(self):
        q = Query.parse_filter('r:^ERROR')
        assert q.regex
        assert q.label() == 'r:^ERROR'
        assert q.test('error at start')
        assert not q.test('no ERROR at start')

    def test_filter_without_prefix_is_substring(self):
        q = Query.parse_filter('^ERROR')
        assert not q.regex
        assert q.test('x^errorx')

    def test_bare_prefix_is_inactive(self):
        assert not Query.parse_filter('r:').active


class TestRecompute:

    def test_no_filter_keeps_everything(self):
        lines = as_lines(LINES)
        view, matches = recompute(lines, Query(), Query())

        assert view == lines
        assert matches == []

    def test_substring_filter_keeps_order(self):
        """A line is kept iff it contains the term, in input order."""
        view, _ = recompute(as_lines(LINES), Query.parse_filter('error'), Query())

        assert [ln.lineno for ln in view] == [2, 3, 5]

    def test_regex_filter(self):
        view, _ = recompute(as_lines(LINES), Query.parse_filter('r:^ERROR'), Query())

        assert [ln.text for ln in view] == ['ERROR radius timeout', 'ERROR auth failed']

    def test_matches_index_filtered_view(self):
        view, matches = recompute(as_lines(LINES), Query.parse_filter('error'),
                                  Query.build('fail'))

        assert matches == [2]
        assert view[matches[0]].text == 'ERROR auth failed'

    def test_filter_matching_nothing(self):
        view, matches = recompute(as_lines(LINES), Query.parse_filter('nomatch'),
                                  Query.build('error'))

        assert view == []
        assert matches == []
