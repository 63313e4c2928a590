"""Embedding similarity between note content and catalog entities."""

import asyncio
from collections import OrderedDict
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

import numpy as np
from loguru import logger

from .models import Entity

MAX_EMBED_CHARS = 512

Encoder = Callable[[List[str]], np.ndarray]


class SemanticSimilarityProvider(Protocol):
    """Anything that can rank entities by similarity to a text."""

    @property
    def is_ready(self) -> bool: ...

    async def embed(self, text: str) -> np.ndarray: ...

    async def top_similar(self, vector: np.ndarray, k: int,
                          excluding: Optional[Set[str]] = None) -> List[Tuple[str, float]]: ...


def _normalize(matrix: np.ndarray) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=np.float32)
    if matrix.ndim == 1:
        norm = np.linalg.norm(matrix)
        return matrix / norm if norm > 0 else matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def entity_text(entity: Entity) -> str:
    """Text embedded for an entity: its name followed by its aliases."""
    return " ".join([entity.name, *entity.aliases])


class EmbeddingSemanticProvider:
    """
    Sentence-transformers backed provider with an in-memory entity index.

    Content embeddings are cached by text; entity embeddings are built
    once per catalog snapshot with ``index_entities``.
    """

    def __init__(self,
                 model_name: str = "all-MiniLM-L6-v2",
                 encoder: Optional[Encoder] = None,
                 cache_size: int = 256):
        self.model_name = model_name
        self._encoder = encoder
        self._model = None
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

        self._names: Tuple[str, ...] = ()
        self._matrix: Optional[np.ndarray] = None

    @property
    def is_ready(self) -> bool:
        return self._matrix is not None and len(self._names) > 0

    def _encode(self, texts: List[str]) -> np.ndarray:
        if self._encoder is not None:
            return np.asarray(self._encoder(texts), dtype=np.float32)
        if self._model is None:
            # Deferred so the model only loads when semantic scoring is enabled
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading embedding model {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model.encode(texts, convert_to_numpy=True)

    def index_entities_sync(self, entities: Sequence[Entity]) -> int:
        names = tuple(e.name for e in entities)
        if not names:
            self._names, self._matrix = (), None
            return 0
        texts = [entity_text(e)[:MAX_EMBED_CHARS] for e in entities]
        matrix = _normalize(self._encode(texts))
        # Swap both together so readers never see a mismatched pair
        self._names, self._matrix = names, matrix
        logger.info(f"Indexed {len(names)} entity embeddings")
        return len(names)

    async def index_entities(self, entities: Iterable[Entity]) -> int:
        entities = list(entities)
        return await asyncio.get_running_loop().run_in_executor(None, self.index_entities_sync, entities)

    async def embed(self, text: str) -> np.ndarray:
        text = text[:MAX_EMBED_CHARS]
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached

        encoded = await asyncio.get_running_loop().run_in_executor(None, self._encode, [text])
        vector = _normalize(np.asarray(encoded)[0])

        self._cache[text] = vector
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return vector

    async def top_similar(self, vector: np.ndarray, k: int,
                          excluding: Optional[Set[str]] = None) -> List[Tuple[str, float]]:
        """Top ``k`` entities by cosine similarity, skipping lowercase names in ``excluding``."""
        names, matrix = self._names, self._matrix
        if matrix is None or k <= 0:
            return []

        similarities = matrix @ _normalize(vector)
        excluding = excluding or set()
        results = []
        for idx in np.argsort(-similarities):
            name = names[int(idx)]
            if name.lower() in excluding:
                continue
            results.append((name, float(similarities[int(idx)])))
            if len(results) >= k:
                break
        return results
