# =============================================================================
# Embedding Lens - Encoder Runtime
# =============================================================================
# Holds every piece of mutable model state in one RuntimeContext (vision and
# text towers, the text cache, the current image embedding) and implements
# the request handlers that the worker loop dispatches to. Handlers are
# generators so load progress can be emitted before each stage runs.
#
# Error mapping:
#   - Any exception during ``load`` -> fatal ErrorEvent, no further progress.
#   - Any exception during an encode -> non-fatal ErrorEvent echoing the
#     request type and id; the orchestrator decides whether it is fatal.
# =============================================================================

import logging
import traceback
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

import numpy as np

from encoder.cache import TextEmbeddingCache
from encoder.text import TextEncoder
from encoder.vision import VisionEncoder
from shared.errors import ProtocolError
from shared.messages import (
    BatchResultEvent,
    EncodeTextRequest,
    ErrorEvent,
    InferRequest,
    LoadRequest,
    ProgressEvent,
    ReadyEvent,
    ResultEvent,
    RuntimeEvent,
    RuntimeRequest,
    ScoreBatchRequest,
    ScoredText,
    TextResultEvent,
)
from shared.scoring import cosine, scale_score

logger = logging.getLogger(__name__)

READY_STAGE = "Ready"


@dataclass
class RuntimeContext:
    """
    All state owned by the encoder runtime process.

    Created once at worker start-up and passed to every handler.

    Attributes:
        vision:          CLIP vision tower wrapper.
        text:            CLIP text tower wrapper (owns the text cache).
        image_embedding: Most recent normalized image embedding, or None.
        loaded:          True once every load stage has completed.
    """

    vision: VisionEncoder
    text: TextEncoder
    image_embedding: Optional[np.ndarray] = None
    loaded: bool = False

    @classmethod
    def from_config(cls, config) -> "RuntimeContext":
        """Build unloaded encoders from the global Config."""
        cache = TextEmbeddingCache(capacity=config.text_cache_size)
        return cls(
            vision=VisionEncoder(config.model_id, config.device, config.torch_dtype),
            text=TextEncoder(config.model_id, config.device, config.torch_dtype, cache=cache),
        )

    def load_stages(self):
        """Ordered (label, percent, loader) triples with increasing percent."""
        return [
            ("Loading image processor...", 5, self.vision.load_processor),
            ("Loading vision model...", 25, self.vision.load_model),
            ("Loading text encoder...", 55, self.text.load),
        ]


def _format_error(exc: BaseException) -> str:
    """Message plus traceback, for diagnostics on the orchestrator side."""
    return f"{exc}\n{''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))}"


def _score_text(ctx: RuntimeContext, text: str) -> Tuple[float, float]:
    """Encode (or fetch) ``text`` and score it against the current image."""
    text_embedding = ctx.text.encode(text)
    raw_score = 0.0
    if ctx.image_embedding is not None:
        raw_score = cosine(ctx.image_embedding, text_embedding)
    return raw_score, scale_score(raw_score)


def handle_load(ctx: RuntimeContext, request: LoadRequest) -> Iterator[RuntimeEvent]:
    """Run every load stage, reporting progress before each one."""
    if not ctx.loaded:
        for stage, pct, loader in ctx.load_stages():
            yield ProgressEvent(stage=stage, pct=pct)
            logger.info("%s (%d%%)", stage, pct)
            loader()
        ctx.loaded = True
    yield ProgressEvent(stage=READY_STAGE, pct=100)
    yield ReadyEvent()


def handle_infer(ctx: RuntimeContext, request: InferRequest) -> Iterator[RuntimeEvent]:
    """Encode a frame and make it the current image embedding."""
    embedding = ctx.vision.encode(request.image_data, request.width, request.height)
    # Swap the reference; the previous array is never mutated in place
    ctx.image_embedding = embedding
    yield ResultEvent(embedding=embedding.tolist())


def handle_encode_text(ctx: RuntimeContext, request: EncodeTextRequest) -> Iterator[RuntimeEvent]:
    """Score one text against the current image (0 when there is none yet)."""
    raw_score, scaled_score = _score_text(ctx, request.text)
    yield TextResultEvent(
        text=request.text,
        raw_score=raw_score,
        scaled_score=scaled_score,
        id=request.id,
    )


def handle_score_batch(ctx: RuntimeContext, request: ScoreBatchRequest) -> Iterator[RuntimeEvent]:
    """Re-score every text; answers with no results before the first frame."""
    results = []
    if ctx.image_embedding is not None:
        for text in request.texts:
            raw_score, scaled_score = _score_text(ctx, text)
            results.append(ScoredText(text=text, raw_score=raw_score, scaled_score=scaled_score))
    yield BatchResultEvent(results=results, id=request.id)


def handle_request(ctx: RuntimeContext, request: RuntimeRequest) -> Iterator[RuntimeEvent]:
    """
    Dispatch one request and convert failures into ErrorEvents.

    Raises:
        ProtocolError: For request types the runtime does not handle here
                       (``shutdown`` belongs to the worker loop).
    """
    if isinstance(request, LoadRequest):
        handler, fatal, request_id = handle_load, True, None
    elif isinstance(request, InferRequest):
        handler, fatal, request_id = handle_infer, False, None
    elif isinstance(request, EncodeTextRequest):
        handler, fatal, request_id = handle_encode_text, False, request.id
    elif isinstance(request, ScoreBatchRequest):
        handler, fatal, request_id = handle_score_batch, False, request.id
    else:
        raise ProtocolError(f"Runtime cannot handle request type {request.type!r}")

    try:
        yield from handler(ctx, request)
    except Exception as exc:
        if fatal:
            logger.exception("Encoder runtime failed to load")
        else:
            logger.warning("Request %s failed: %s", request.type, exc)
        yield ErrorEvent(
            message=_format_error(exc),
            fatal=fatal,
            request=request.type,
            id=request_id,
        )
