# =============================================================================
# Embedding Lens - FastAPI Rendering-Layer API
# =============================================================================
# Exposes a running LensSession to the rendering layer: a snapshot of the
# current embedding, segmentation mask, ranked queries and session state,
# plus endpoints to add and remove queries. Served by uvicorn on the same
# event loop as the session, so handlers can await session coroutines.
# =============================================================================

import logging
from typing import List

from fastapi import FastAPI, HTTPException

from shared.errors import InferenceFailure, LensError
from shared.schemas import HealthResponse, QueryRequest, QueryView, SessionSnapshot

logger = logging.getLogger(__name__)


def create_app(session) -> FastAPI:
    """
    Build the API around a session.

    Args:
        session: A LensSession (or anything with the same public surface).

    Returns:
        The FastAPI application.
    """
    app = FastAPI(
        title="Embedding Lens",
        description=(
            "Live CLIP embedding of the camera feed, scored against "
            "natural-language queries."
        ),
        version="0.1.0",
    )
    app.state.session = session

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        """Session state, whether models are loaded, and uptime."""
        return HealthResponse(
            status="error" if session.error else "ok",
            state=session.state.value,
            model_loaded=session.model_loaded,
            uptime_seconds=round(session.uptime_seconds, 2),
        )

    @app.get("/api/v1/state", response_model=SessionSnapshot)
    def get_state():
        """Full snapshot for one frame of UI."""
        return session.snapshot()

    @app.get("/api/v1/queries", response_model=List[QueryView])
    def list_queries():
        """Tracked queries, best match first."""
        return session.queries.ranked()

    @app.post("/api/v1/queries", response_model=List[QueryView])
    async def add_query(body: QueryRequest):
        """Score a query against the current frame and start tracking it."""
        try:
            await session.submit_query(body.text)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except InferenceFailure as exc:
            raise HTTPException(status_code=502, detail=(str(exc).splitlines() or ["Inference failed"])[0])
        except LensError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return session.queries.ranked()

    @app.delete("/api/v1/queries/{text:path}", response_model=List[QueryView])
    def remove_query(text: str):
        """Stop tracking a query."""
        if not session.remove_query(text):
            raise HTTPException(status_code=404, detail=f"Query {text!r} not found")
        return session.queries.ranked()

    return app
