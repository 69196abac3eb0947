"""Tests for mnemos.search.tokenizer — text-search tokenizer."""

from mnemos.search.tokenizer import (
    is_compound_identifier,
    overlap_score,
    query_terms,
    split_identifier,
    stem,
    term_set,
    tokenize,
)


# ---------------------------------------------------------------------------
# split_identifier
# ---------------------------------------------------------------------------


class TestSplitIdentifier:
    def test_camel_case(self):
        assert split_identifier("getUserById") == ["get", "user", "by", "id"]

    def test_pascal_case(self):
        assert split_identifier("UserService") == ["user", "service"]

    def test_snake_case(self):
        assert split_identifier("snake_case_name") == ["snake", "case", "name"]

    def test_dot_path(self):
        assert split_identifier("os.path.join") == ["os", "path", "join"]

    def test_acronym(self):
        assert split_identifier("HTTPResponse") == ["http", "response"]

    def test_short_input(self):
        assert split_identifier("a") == []


class TestCompound:
    def test_detects(self):
        assert is_compound_identifier("getUserById")
        assert is_compound_identifier("snake_case")
        assert not is_compound_identifier("simple")
        assert not is_compound_identifier("ab")


# ---------------------------------------------------------------------------
# tokenize / terms
# ---------------------------------------------------------------------------


class TestTokenize:
    def test_expands_compounds(self):
        assert tokenize("call getUserById") == [
            "call", "getuserbyid", "get", "user", "by", "id",
        ]

    def test_empty(self):
        assert tokenize("") == []

    def test_stem(self):
        assert stem("dependencies") == "dependency"
        assert stem("installs") == "install"
        assert stem("class") == "class"
        assert stem("is") == "is"

    def test_term_set_stems(self):
        assert "dependency" in term_set("Use bun install for dependencies")

    def test_query_terms_drop_stopwords(self):
        assert query_terms("how do I install the dependencies") == ["install", "dependency"]

    def test_query_terms_all_stopwords(self):
        assert query_terms("what is it") == ["what", "is", "it"]

    def test_query_terms_distinct(self):
        assert query_terms("bun bun bun") == ["bun"]


class TestOverlap:
    def test_fraction(self):
        assert overlap_score(["a", "b"], {"a", "c"}) == 0.5

    def test_no_terms(self):
        assert overlap_score([], {"a"}) == 0.0
