# =============================================================================
# Embedding Lens - Rendering-Layer Schemas
# =============================================================================
# Pydantic models defining the data contract between the lens session and
# whatever renders it (the embedding grid, the query list, the load screen).
# These schemas are used for serialization across the HTTP API boundary.
# =============================================================================

from typing import List, Optional

from pydantic import BaseModel, Field


class QueryView(BaseModel):
    """
    One tracked query as shown to the user.

    Attributes:
        text:         The query text, as submitted (trimmed).
        raw_score:    Cosine similarity against the current image embedding.
        scaled_score: raw_score multiplied by the CLIP logit scale (100).
        probability:  Softmax share in percent across all tracked queries, or
                      None when fewer than two queries exist (the scaled score
                      should be displayed instead).
    """

    text: str
    raw_score: float
    scaled_score: float
    probability: Optional[float] = None


class SessionSnapshot(BaseModel):
    """
    Everything the rendering layer needs for one frame of UI.

    Attributes:
        state:             One of "loading", "camera", "live", "error".
        stage:             Current load stage label.
        pct:               Load progress percent (0-100).
        embedding:         Current image embedding (zeros before the first frame).
        mask:              Current segmentation mask, row-major 32x16, mirrored.
        segmentation_mode: "brightness" or "mediapipe".
        queries:           Tracked queries, sorted by scaled score descending.
        inference_ms:      Latency of the last completed image inference.
        frames_encoded:    Number of image embeddings received this session.
        error:             Last fatal error message, if any.
    """

    state: str
    stage: str
    pct: int
    embedding: List[float]
    mask: List[float]
    segmentation_mode: str
    queries: List[QueryView]
    inference_ms: float
    frames_encoded: int
    error: Optional[str] = None


class QueryRequest(BaseModel):
    """Body of a query submission."""

    text: str = Field(..., description="Natural-language description to score")


class HealthResponse(BaseModel):
    """Liveness information for the lens process."""

    status: str
    state: str
    model_loaded: bool
    uptime_seconds: float
