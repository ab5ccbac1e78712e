import numpy as np
import pytest

from encoder.cache import TextEmbeddingCache


def _vec(i):
    return np.full(4, i, dtype=np.float32)


class TestTextEmbeddingCache:
    def test_evicts_first_inserted_on_51st(self):
        cache = TextEmbeddingCache(capacity=50)
        for i in range(51):
            cache.put(f"text {i}", _vec(i))

        assert len(cache) == 50
        assert "text 0" not in cache
        assert "text 1" in cache
        assert "text 50" in cache

    def test_hit_does_not_refresh_order(self):
        cache = TextEmbeddingCache(capacity=3)
        cache.put("a", _vec(1))
        cache.put("b", _vec(2))
        cache.put("c", _vec(3))

        assert cache.get("a") is not None
        cache.put("d", _vec(4))

        assert "a" not in cache
        assert list(cache) == ["b", "c", "d"]

    def test_get_returns_same_object(self):
        cache = TextEmbeddingCache()
        vec = _vec(9)
        cache.put("x", vec)
        assert cache.get("x") is vec
        assert len(cache) == 1

    def test_keys_are_exact(self):
        cache = TextEmbeddingCache()
        cache.put("A cat", _vec(1))
        assert cache.get("a cat") is None
        assert cache.get("A cat ") is None

    def test_miss(self):
        assert TextEmbeddingCache().get("nothing") is None

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            TextEmbeddingCache(capacity=0)
