"""Tests for tokenization and stemming."""

from linksmith.engine.tokenizer import (
    content_terms, extract_linked_entities, is_stopword, stem, tokenize, tokenize_and_stem,
)


class TestTokenize:
    """Test significant-word extraction."""

    def test_drops_stopwords_and_short_words(self):
        assert tokenize("Met with Jordan Smith about TypeScript") == ["jordan", "smith", "typescript"]

    def test_unwraps_wikilinks(self):
        assert tokenize("[[Jordan Smith|JS]] reviewed notes") == ["jordan", "smith", "reviewed"]

    def test_strips_markdown(self):
        assert tokenize("**Kubernetes** and `docker`") == ["kubernetes", "docker"]

    def test_keeps_duplicates_in_order(self):
        assert tokenize("react react svelte", min_length=3) == ["react", "react", "svelte"]

    def test_min_length(self):
        assert tokenize("yarn npm pnpm", min_length=3) == ["yarn", "npm", "pnpm"]
        assert tokenize("yarn npm pnpm") == ["yarn", "pnpm"]


class TestStemming:
    """Test Porter stemming helpers."""

    def test_stem_variants_collapse(self):
        assert stem("running") == stem("run")
        assert stem("deployments") == stem("deploy")

    def test_short_words_unchanged(self):
        assert stem("ab") == "ab"

    def test_tokenize_and_stem(self):
        tokens, stems = tokenize_and_stem("deployments failing")
        assert tokens == {"deployments", "failing"}
        assert stem("deploy") in stems


class TestContentTerms:
    """Test the token/stem pair used for matching."""

    def test_generic_words_dropped(self):
        tokens, _ = content_terms("The message about kubernetes", 3)
        assert tokens == {"kubernetes"}

    def test_stopwords(self):
        assert is_stopword("The")
        assert is_stopword("completed")
        assert not is_stopword("kubernetes")


class TestLinkedEntities:
    """Test wikilink target extraction."""

    def test_extracts_lowercase_targets(self):
        content = "See [[Jordan Smith]] and [[TypeScript|TS]] and [[ React ]]"
        assert extract_linked_entities(content) == {"jordan smith", "typescript", "react"}

    def test_no_links(self):
        assert extract_linked_entities("plain text") == set()
