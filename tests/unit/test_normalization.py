"""Tests for query normalization."""

import pytest

from backend.core.caching.normalization import (
    DEFAULT_STOPWORDS,
    QueryNormalizer,
    normalize_query,
)


class TestNormalizeQuery:
    """Test normalize_query()."""

    def test_lowercases_and_trims(self):
        assert normalize_query("  What Is The LOAN Cap  ") == "what is the loan cap"

    def test_strips_punctuation(self):
        assert normalize_query("What's the loan cap??!") == "whats the loan cap"

    def test_collapses_whitespace(self):
        assert normalize_query("loan \t\n   cap") == "loan cap"

    def test_punctuation_between_words_leaves_single_space(self):
        assert normalize_query("loan - cap") == "loan cap"

    def test_compatibility_forms_are_folded(self):
        # full-width letters and digits
        assert normalize_query("ＬＯＡＮ １５") == "loan 15"

    def test_keeps_non_latin_letters_and_digits(self):
        assert normalize_query("Préstamo ₹15 lakh") == "préstamo 15 lakh"

    @pytest.mark.parametrize("value", [None, 42, 3.5, ["loan"], {"q": "loan"}])
    def test_non_string_yields_empty(self, value):
        assert normalize_query(value) == ""

    def test_empty_and_punctuation_only(self):
        assert normalize_query("") == ""
        assert normalize_query("?!...") == ""

    def test_deterministic(self):
        text = "  Who is ELIGIBLE for the scheme?  "
        assert normalize_query(text) == normalize_query(text)

    def test_idempotent(self):
        once = normalize_query("Tell me: what's the INTEREST rate?")
        assert normalize_query(once) == once


class TestStopwords:
    """Test optional stop-word stripping."""

    def test_off_by_default(self):
        assert normalize_query("what is the loan cap") == "what is the loan cap"

    def test_default_list(self):
        assert normalize_query("Please tell me what is the loan cap", strip_stopwords=True) == "loan cap"

    def test_custom_list(self):
        assert normalize_query("the loan cap", strip_stopwords=True, stopwords={"loan"}) == "the cap"

    def test_all_stopwords_yields_empty(self):
        assert normalize_query("what is the", strip_stopwords=True) == ""

    def test_default_list_contents(self):
        assert "the" in DEFAULT_STOPWORDS
        assert "loan" not in DEFAULT_STOPWORDS


class TestQueryNormalizer:
    """Test QueryNormalizer wrapper."""

    def test_normalize_matches_function(self):
        normalizer = QueryNormalizer()
        assert normalizer.normalize("  Loan CAP? ") == normalize_query("  Loan CAP? ")

    def test_callable(self):
        normalizer = QueryNormalizer(strip_stopwords=True)
        assert normalizer("What is the loan cap?") == "loan cap"

    def test_custom_stopwords(self):
        normalizer = QueryNormalizer(strip_stopwords=True, stopwords=["cap"])
        assert normalizer("what is the loan cap") == "what is the loan"
