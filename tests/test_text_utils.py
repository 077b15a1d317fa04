"""
Tests for word-set similarity and character-based token budgeting.
"""

import pytest

from agent_memory.utils.text_similarity import jaccard, tokenize
from agent_memory.utils.token_budget import budget_chars, estimate_tokens, take_within_budget


class TestJaccard:
    def test_tokenize_lowercases_and_splits_on_whitespace(self):
        assert tokenize('User  Prefers\tDark mode') == {'user', 'prefers', 'dark', 'mode'}

    def test_dark_and_light_mode(self):
        assert jaccard('User prefers dark mode', 'User prefers light mode') == pytest.approx(0.6)

    def test_identical_and_disjoint(self):
        assert jaccard('a b c', 'C B A') == 1.0
        assert jaccard('a b', 'c d') == 0.0

    def test_both_empty(self):
        assert jaccard('', '   ') == 0.0


class TestTokenBudget:
    def test_estimate_tokens(self):
        assert estimate_tokens('') == 0
        assert estimate_tokens('abc') == 1
        assert estimate_tokens('a' * 40) == 10

    def test_budget_chars(self):
        assert budget_chars(500) == 2000
        assert budget_chars(-1) == 0

    def test_take_within_budget_counts_header_and_newlines(self):
        header = '# H'  # 3 chars
        lines = ['- aaaa', '- bbbb', '- cccc']  # each costs 7 with its newline
        # 5 tokens = 20 chars: 3 + 7 + 7 = 17 fits, a third line would make 24
        assert take_within_budget(header, lines, 5) == ['- aaaa', '- bbbb']

    def test_take_within_budget_stops_at_first_overflow(self):
        lines = ['- short', '- ' + 'x' * 100, '- tiny']
        assert take_within_budget('# H', lines, 10) == ['- short']

    def test_take_within_budget_nothing_fits(self):
        assert take_within_budget('# Working Memory', ['- anything'], 1) == []
