"""Tests for content normalization, hashing and change detection."""

import pytest

from sitecorpus.services.content_hasher import (
    content_hash,
    has_changed_significantly,
    normalize,
    sha256,
    similarity,
)

CATALOG = " ".join(
    f"Acme sells anvil model {i} to discerning roadrunner hunters." for i in range(20)
)


class TestNormalize:
    """Test normalize() function."""

    def test_line_endings_and_blank_lines(self):
        assert normalize("Hello\r\n\r\n\r\n\r\nWorld ") == "hello\n\nworld"

    def test_lines_are_trimmed_and_lowercased(self):
        assert normalize("  Title  \n   Body text\t") == "title\nbody text"

    def test_single_blank_line_preserved(self):
        assert normalize("a\n\nb") == "a\n\nb"


class TestContentHash:
    """Test content_hash() function."""

    def test_formatting_only_changes_hash_identically(self):
        assert content_hash("Hello\r\n\r\n\r\nWorld ") == content_hash("hello\n\nworld")

    def test_is_sha256_of_normalized_text(self):
        assert content_hash(" ABC ") == sha256("abc")
        assert len(content_hash("x")) == 64

    def test_different_words_hash_differently(self):
        assert content_hash("anvils") != content_hash("rockets")


class TestSimilarity:
    """Test similarity() bigram Dice coefficient."""

    def test_identical_is_one(self):
        assert similarity("abc", "abc") == 1.0

    def test_whitespace_is_ignored(self):
        assert similarity("a b\nc", "abc") == 1.0

    def test_partial_overlap(self):
        # bigrams {ab, bc} vs {ab, bd}: 2 * 1 / 4
        assert similarity("abc", "abd") == pytest.approx(0.5)

    def test_too_short_is_zero(self):
        assert similarity("a", "b") == 0.0
        assert similarity("", "abc") == 0.0

    def test_empty_inputs_are_identical(self):
        assert similarity("", "") == 1.0

    def test_disjoint_text(self):
        assert similarity("aaaa", "bbbb") == 0.0


class TestHasChangedSignificantly:
    """Test has_changed_significantly() decisions."""

    def test_no_previous_text_is_a_change(self):
        check = has_changed_significantly("new page", None)

        assert check.changed is True
        assert check.similarity == 0.0
        assert check.digest == content_hash("new page")

    def test_empty_previous_text_is_compared_not_treated_as_missing(self):
        assert has_changed_significantly("", "").changed is False
        assert has_changed_significantly("new page", "").changed is True

    def test_equal_digest_short_circuits(self):
        check = has_changed_significantly("Hello  \nWorld", "hello\nworld")

        assert check.changed is False
        assert check.similarity == 1.0

    def test_small_edit_is_below_threshold(self):
        check = has_changed_significantly(CATALOG + " Now shipping!", CATALOG, 0.95)

        assert check.changed is False
        assert 0.95 <= check.similarity < 1.0
        assert check.digest == content_hash(CATALOG + " Now shipping!")

    def test_rewrite_is_a_change(self):
        rewrite = "Acme is closed. All inventory has been sold to Wile E. Coyote."
        check = has_changed_significantly(rewrite, CATALOG, 0.95)

        assert check.changed is True
        assert check.similarity < 0.95

    def test_threshold_is_configurable(self):
        check_strict = has_changed_significantly("abcdefgh", "abcdefgx", 0.99)
        check_loose = has_changed_significantly("abcdefgh", "abcdefgx", 0.5)

        assert check_strict.changed is True
        assert check_loose.changed is False
