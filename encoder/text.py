# =============================================================================
# Embedding Lens - Text Tower Encoder
# =============================================================================
# Provides the TextEncoder class that loads the CLIP tokenizer and text model
# (with projection head) and returns L2-normalized text embeddings, memoized
# in a FIFO TextEmbeddingCache keyed by the exact text.
# =============================================================================

import logging
from typing import Optional

import numpy as np
import torch
from transformers import AutoTokenizer, CLIPTextModelWithProjection

from encoder.cache import TextEmbeddingCache
from shared.errors import InferenceFailure
from shared.scoring import l2_normalize

logger = logging.getLogger(__name__)


class TextEncoder:
    """
    CLIP text tower with an embedding cache in front of it.

    Args:
        model_id: HuggingFace model identifier.
        device:   Compute device string.
        dtype:    Torch dtype for model weights.
        cache:    Cache instance; a 50-entry cache is created when omitted.
    """

    def __init__(
        self,
        model_id: str,
        device: str,
        dtype: torch.dtype,
        cache: Optional[TextEmbeddingCache] = None,
    ):
        self._model_id = model_id
        self._device = device
        self._dtype = dtype
        self._cache = cache if cache is not None else TextEmbeddingCache()
        self._tokenizer = None
        self._model = None

    def load(self) -> None:
        """Load the tokenizer, then the text tower."""
        logger.info("Loading tokenizer: %s", self._model_id)
        self._tokenizer = AutoTokenizer.from_pretrained(self._model_id)

        logger.info("Loading text model: %s (device=%s)", self._model_id, self._device)
        self._model = CLIPTextModelWithProjection.from_pretrained(
            self._model_id, torch_dtype=self._dtype
        ).to(self._device)
        self._model.eval()

    @property
    def is_ready(self) -> bool:
        return self._tokenizer is not None and self._model is not None

    @property
    def cache(self) -> TextEmbeddingCache:
        return self._cache

    @torch.no_grad()
    def _forward(self, text: str) -> np.ndarray:
        """Tokenize and run the text tower, returning the raw projection."""
        inputs = self._tokenizer([text], padding=True, truncation=True, return_tensors="pt")
        inputs = {name: tensor.to(self._device) for name, tensor in inputs.items()}
        outputs = self._model(**inputs)
        return outputs.text_embeds[0].float().cpu().numpy()

    def encode(self, text: str) -> np.ndarray:
        """
        Return the normalized embedding for ``text``.

        A cache hit returns the stored array as-is, with no model call and no
        change to eviction order.

        Raises:
            InferenceFailure: If the encoder is not loaded.
        """
        cached = self._cache.get(text)
        if cached is not None:
            return cached

        if not self.is_ready:
            raise InferenceFailure("Text encoder is not loaded")

        embedding = l2_normalize(self._forward(text))
        self._cache.put(text, embedding)
        logger.debug("Encoded text %r (cache size=%d)", text, len(self._cache))
        return embedding
