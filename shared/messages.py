# =============================================================================
# Embedding Lens - Orchestrator <-> Encoder Runtime Message Protocol
# =============================================================================
# Pydantic models for every message crossing the process boundary. Each
# direction is a closed tagged union discriminated by the ``type`` literal,
# so an unknown or malformed message fails validation instead of being
# silently ignored. Messages travel over multiprocessing queues as plain
# dicts (``to_wire``) and are re-validated on receipt (``parse_*``).
#
# Correlation:
#   - ``infer`` carries no id: the runtime answers image requests in the
#     order received, so the orchestrator resolves the oldest pending one.
#   - ``encode_text`` and ``score_batch`` carry a client-supplied ``id`` that
#     the runtime echoes back on the matching result or error.
# =============================================================================

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from shared.errors import ProtocolError


# ---------------------------------------------------------------------------
# Orchestrator -> Runtime
# ---------------------------------------------------------------------------

class LoadRequest(BaseModel):
    """Begin loading the processor, tokenizer and both CLIP towers."""

    type: Literal["load"] = "load"


class InferRequest(BaseModel):
    """
    Request an image embedding for one RGBA frame.

    Attributes:
        image_data: Raw RGBA bytes, row-major, ``width * height * 4`` long.
        width:      Frame width in pixels.
        height:     Frame height in pixels.
    """

    type: Literal["infer"] = "infer"
    image_data: bytes
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class EncodeTextRequest(BaseModel):
    """Score a single text against the current image embedding."""

    type: Literal["encode_text"] = "encode_text"
    text: str
    id: int


class ScoreBatchRequest(BaseModel):
    """Re-score many texts against the current image embedding."""

    type: Literal["score_batch"] = "score_batch"
    texts: List[str]
    id: int


class ShutdownRequest(BaseModel):
    """Ask the runtime worker loop to exit."""

    type: Literal["shutdown"] = "shutdown"


RuntimeRequest = Annotated[
    Union[LoadRequest, InferRequest, EncodeTextRequest, ScoreBatchRequest, ShutdownRequest],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Runtime -> Orchestrator
# ---------------------------------------------------------------------------

class ProgressEvent(BaseModel):
    """Load progress update; ``pct`` never decreases across a load."""

    type: Literal["progress"] = "progress"
    stage: str
    pct: int = Field(..., ge=0, le=100)


class ReadyEvent(BaseModel):
    """Models are loaded; safe to start the camera."""

    type: Literal["ready"] = "ready"


class ResultEvent(BaseModel):
    """L2-normalized image embedding for the oldest pending ``infer``."""

    type: Literal["result"] = "result"
    embedding: List[float]


class TextResultEvent(BaseModel):
    """Score of one text against the current image embedding."""

    type: Literal["text_result"] = "text_result"
    text: str
    raw_score: float
    scaled_score: float
    id: int


class ScoredText(BaseModel):
    """One entry of a batch re-score."""

    text: str
    raw_score: float
    scaled_score: float


class BatchResultEvent(BaseModel):
    """Scores for every text of a ``score_batch`` request."""

    type: Literal["batch_result"] = "batch_result"
    results: List[ScoredText]
    id: int


class ErrorEvent(BaseModel):
    """
    A request failed inside the runtime.

    Attributes:
        message: Human-readable message, including a traceback when available.
        fatal:   True when the runtime cannot continue (load failures).
        request: Type tag of the request that failed.
        id:      Echoed request id for ``encode_text`` / ``score_batch``.
    """

    type: Literal["error"] = "error"
    message: str
    fatal: bool = True
    request: Optional[str] = None
    id: Optional[int] = None


RuntimeEvent = Annotated[
    Union[
        ProgressEvent,
        ReadyEvent,
        ResultEvent,
        TextResultEvent,
        BatchResultEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


_request_adapter = TypeAdapter(RuntimeRequest)
_event_adapter = TypeAdapter(RuntimeEvent)


def to_wire(message: BaseModel) -> dict:
    """Serialize a protocol message for a multiprocessing queue."""
    return message.model_dump()


def parse_request(payload: dict) -> RuntimeRequest:
    """
    Validate a dict received by the runtime.

    Raises:
        ProtocolError: If the payload is not a known request.
    """
    try:
        return _request_adapter.validate_python(payload)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid runtime request: {exc}") from exc


def parse_event(payload: dict) -> RuntimeEvent:
    """
    Validate a dict received by the orchestrator.

    Raises:
        ProtocolError: If the payload is not a known event.
    """
    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid runtime event: {exc}") from exc
