# =============================================================================
# Embedding Lens - Similarity Scoring
# =============================================================================
# Vector normalization, cosine similarity between unit embeddings, the CLIP
# logit scale, and softmax normalization of scaled scores into percentages.
# =============================================================================

from typing import List, Sequence

import numpy as np

# CLIP's learned temperature: exp(logit_scale) = 100. Stretches the narrow
# ~0.15-0.35 cosine range of CLIP embeddings into separable logits.
LOGIT_SCALE = 100.0


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """
    Divide every component by the vector's Euclidean norm.

    Args:
        vector: 1-D array (or anything squeezable to one).

    Returns:
        float32 array with norm 1.

    Raises:
        ValueError: If the vector has zero norm.
    """
    vec = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0 or not np.isfinite(norm):
        raise ValueError(f"Cannot normalize vector with norm {norm}")
    return vec / norm


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two pre-normalized embeddings.

    Both inputs are unit vectors, so the dot product is the cosine and no
    division is needed.

    Raises:
        ValueError: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError(f"Embedding length mismatch: {a.shape} vs {b.shape}")
    return float(np.dot(a, b))


def scale_score(raw_score: float) -> float:
    """Apply the fixed CLIP logit scale to a raw cosine score."""
    return raw_score * LOGIT_SCALE


def softmax_percent(scores: Sequence[float]) -> List[float]:
    """
    Convert scaled scores into percentages that sum to 100.

    The maximum is subtracted before exponentiation so large logits do not
    overflow; the resulting distribution is unchanged.

    Args:
        scores: Scaled scores, in query order.

    Returns:
        Percentages in the same order. Empty input gives an empty list.
    """
    if len(scores) == 0:
        return []
    arr = np.asarray(scores, dtype=np.float64)
    exps = np.exp(arr - arr.max())
    return [float(p) for p in exps / exps.sum() * 100.0]
