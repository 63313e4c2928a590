"""Tests for the embedding similarity provider."""

import numpy as np
import pytest

from linksmith.engine.models import Entity
from linksmith.engine.semantic import EmbeddingSemanticProvider, entity_text

VOCAB = ["react", "jordan", "python"]

ENTITIES = [
    Entity("React"),
    Entity("Jordan Smith", aliases=("Jordy",)),
    Entity("Python"),
]


class KeywordEncoder:
    """Bag-of-keywords encoder standing in for a sentence model."""

    def __init__(self):
        self.calls = []

    def __call__(self, texts):
        self.calls.append(list(texts))
        return np.array([[1.0 if word in text.lower() else 0.0 for word in VOCAB] for text in texts])


@pytest.fixture
def encoder():
    return KeywordEncoder()


@pytest.fixture
def provider(encoder):
    provider = EmbeddingSemanticProvider(encoder=encoder)
    provider.index_entities_sync(ENTITIES)
    return provider


def test_entity_text():
    assert entity_text(ENTITIES[1]) == "Jordan Smith Jordy"


class TestIndexing:
    """Test entity index construction."""

    def test_not_ready_before_index(self, encoder):
        assert not EmbeddingSemanticProvider(encoder=encoder).is_ready

    def test_index(self, provider, encoder):
        assert provider.is_ready
        assert encoder.calls[0] == ["React", "Jordan Smith Jordy", "Python"]

    def test_empty_index(self, provider):
        assert provider.index_entities_sync([]) == 0
        assert not provider.is_ready

    @pytest.mark.asyncio
    async def test_async_index(self, encoder):
        provider = EmbeddingSemanticProvider(encoder=encoder)
        assert await provider.index_entities(ENTITIES) == 3
        assert provider.is_ready


class TestSimilarity:
    """Test embedding and ranking."""

    @pytest.mark.asyncio
    async def test_top_similar(self, provider):
        vector = await provider.embed("Refactoring react hooks")
        results = await provider.top_similar(vector, 2)

        assert len(results) == 2
        assert results[0][0] == "React"
        assert results[0][1] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_excluding(self, provider):
        vector = await provider.embed("Refactoring react hooks")
        results = await provider.top_similar(vector, 3, excluding={"react"})
        assert "React" not in [name for name, _ in results]
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_no_index(self, encoder):
        provider = EmbeddingSemanticProvider(encoder=encoder)
        vector = await provider.embed("react")
        assert await provider.top_similar(vector, 3) == []

    @pytest.mark.asyncio
    async def test_embed_cache(self, provider, encoder):
        first = await provider.embed("python scripts")
        second = await provider.embed("python scripts")
        assert np.array_equal(first, second)
        # One call for the index, one for the content
        assert len(encoder.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_eviction(self, encoder):
        provider = EmbeddingSemanticProvider(encoder=encoder, cache_size=1)
        await provider.embed("react")
        await provider.embed("python")
        await provider.embed("react")
        assert len(encoder.calls) == 3
