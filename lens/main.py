# =============================================================================
# Embedding Lens - Entry Point
# =============================================================================
# Starts the encoder runtime process, the camera, the segmentation engine and
# the rendering-layer API, all driven from one asyncio event loop:
#
#   1. Spawn the encoder runtime and stream model load progress
#   2. Open the camera once models are ready
#   3. Run the inference and segmentation timers
#   4. Serve snapshots and query endpoints over HTTP until Ctrl+C
# =============================================================================

import argparse
import asyncio
import functools
import logging
from typing import List

import uvicorn

from config import get_config
from lens.api import create_app
from lens.capture import CameraCapture
from lens.client import EncoderClient
from lens.segmentation import BrightnessSegmenter, SegmentationEngine, SelfieSegmenter
from lens.session import LensSession, SessionState
from shared.errors import LensError

logger = logging.getLogger(__name__)


def build_session(config) -> LensSession:
    """Wire the runtime client, camera and segmentation into a session."""
    segmentation = SegmentationEngine(
        BrightnessSegmenter(cols=config.grid_cols, rows=config.grid_rows),
        cells=config.grid_cells,
    )
    selfie_factory = None
    if config.ml_segmentation:
        selfie_factory = functools.partial(
            SelfieSegmenter.create,
            model_selection=config.segmentation_model_selection,
            cols=config.grid_cols,
            rows=config.grid_rows,
        )
    return LensSession(
        config,
        client=EncoderClient(config),
        camera=CameraCapture(
            camera_index=config.camera_index,
            width=config.camera_width,
            height=config.camera_height,
        ),
        segmentation=segmentation,
        selfie_factory=selfie_factory,
    )


async def _submit_initial_queries(session: LensSession, queries: List[str]) -> None:
    """Submit command-line queries as soon as the session goes live."""
    state = await session.wait_until_settled()
    if state is not SessionState.LIVE:
        return
    for text in queries:
        try:
            query = await session.submit_query(text)
        except (ValueError, LensError) as exc:
            logger.warning("Could not submit query %r: %s", text, exc)
            continue
        logger.info("Tracking %r (scaled score %.2f)", query.text, query.scaled_score)


async def serve(config, queries: List[str]) -> None:
    """Run the session and the API server until the server exits."""
    session = build_session(config)
    app = create_app(session)
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.api_host, port=config.api_port, log_level="info")
    )

    session_task = asyncio.create_task(session.run(), name="session")
    initial = None
    if queries:
        initial = asyncio.create_task(_submit_initial_queries(session, queries), name="initial-queries")

    try:
        await server.serve()
    finally:
        logger.info("Shutting down...")
        if initial is not None:
            initial.cancel()
        await session.stop()
        session_task.cancel()
        await asyncio.gather(session_task, return_exceptions=True)


def main():
    """CLI entry point for the lens."""
    parser = argparse.ArgumentParser(
        description="Embedding Lens: live CLIP embedding of the camera feed",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--camera", type=int, default=None, help="OpenCV camera index")
    parser.add_argument("--host", type=str, default=None, help="API bind address")
    parser.add_argument("--port", type=int, default=None, help="API bind port")
    parser.add_argument("--model", type=str, default=None, help="HuggingFace CLIP model id")
    parser.add_argument("--device", type=str, default=None, help="Torch device (cpu, cuda, mps)")
    parser.add_argument(
        "--no-ml-segmentation", action="store_true",
        help="Keep the brightness segmentation heuristic; never load MediaPipe",
    )
    parser.add_argument(
        "--no-inference-guard", action="store_true",
        help="Dispatch every inference tick even while a frame is still in flight",
    )
    parser.add_argument(
        "--fatal-inference-errors", action="store_true",
        help="End the session on the first failed encode instead of skipping it",
    )
    parser.add_argument(
        "--query", action="append", default=[],
        help="Query to track from the start (repeatable)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()
    if args.camera is not None:
        config.camera_index = args.camera
    if args.host is not None:
        config.api_host = args.host
    if args.port is not None:
        config.api_port = args.port
    if args.model is not None:
        config.model_id = args.model
    if args.device is not None:
        config.device = args.device
    if args.no_ml_segmentation:
        config.ml_segmentation = False
    if args.no_inference_guard:
        config.inference_guard = False
    if args.fatal_inference_errors:
        config.inference_errors_fatal = True

    print("\n" + "=" * 60)
    print("  Embedding Lens")
    print("=" * 60)
    print(f"  Model       : {config.model_id}")
    print(f"  Device      : {config.device}")
    print(f"  Camera      : {config.camera_index} ({config.camera_width}x{config.camera_height})")
    print(f"  Inference   : every {config.inference_interval_seconds}s (guard={config.inference_guard})")
    print(f"  Segmentation: every {config.segmentation_interval_seconds}s (ml={config.ml_segmentation})")
    print(f"  API         : http://{config.api_host}:{config.api_port}")
    print("=" * 60 + "\n")

    asyncio.run(serve(config, args.query))


if __name__ == "__main__":
    main()
