# =============================================================================
# Embedding Lens - Text Embedding Cache
# =============================================================================
# Bounded, insertion-ordered cache of normalized text embeddings keyed by the
# exact query string. Eviction is FIFO: a cache hit does not refresh an
# entry's position, so the earliest-inserted key is always evicted first.
# =============================================================================

import logging
from collections import OrderedDict
from typing import Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)


class TextEmbeddingCache:
    """
    FIFO cache of text embeddings.

    Args:
        capacity: Maximum number of entries kept (the 51st insert evicts the
                  first one with the default of 50).
    """

    def __init__(self, capacity: int = 50):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._entries: "OrderedDict[str, np.ndarray]" = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, text: str) -> Optional[np.ndarray]:
        """Return the cached embedding for ``text`` without touching its order."""
        return self._entries.get(text)

    def put(self, text: str, embedding: np.ndarray) -> None:
        """
        Insert an embedding, evicting the oldest entry when over capacity.

        Re-inserting an existing key replaces the value but keeps its
        original position in eviction order.
        """
        self._entries[text] = embedding
        if len(self._entries) > self._capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Text cache full (%d); evicted %r", self._capacity, evicted)

    def __contains__(self, text: str) -> bool:
        return text in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def clear(self) -> None:
        self._entries.clear()
