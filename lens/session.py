# =============================================================================
# Embedding Lens - Session Orchestrator
# =============================================================================
# Provides the LensSession class that drives one live session on a single
# asyncio event loop:
#
#   LOADING --ready--> AWAITING_CAMERA --first frame--> LIVE
#      |                     |                            |
#      +------ failure ------+------- fatal error --------+--> ERROR (terminal)
#
# While LIVE, two independent timers run:
#   - inference (initial delay, then fixed period): capture a frame, send it
#     to the encoder runtime, and batch re-score every tracked query when
#     the embedding comes back;
#   - segmentation (short fixed period): sample the authoritative
#     segmentation strategy in a worker thread.
#
# The session exclusively owns the query book and load progress, and
# exposes everything the renderer needs through snapshot().
# =============================================================================

import asyncio
import enum
import logging
import time
from typing import Callable, Dict, Optional, Set

import numpy as np

from lens.capture import CameraCapture, frame_to_rgba
from lens.client import EncoderClient
from lens.queries import Query, QueryBook
from lens.segmentation import SegmentationEngine, SegmentationStrategy
from shared.errors import InferenceFailure, LensError, PermissionDenied
from shared.messages import TextResultEvent
from shared.schemas import SessionSnapshot

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    LOADING = "loading"
    AWAITING_CAMERA = "camera"
    LIVE = "live"
    ERROR = "error"


class LensSession:
    """
    Orchestrator tying together the encoder runtime, camera, segmentation
    and the query book.

    Args:
        config:            The global Config instance.
        client:            Encoder runtime client (started by the session).
        camera:            Camera capture; ``open()`` is called once models are ready.
        segmentation:      Engine holding the brightness strategy initially.
        selfie_factory:    Zero-argument callable building the model-based
                           segmentation strategy, run in a worker thread; None
                           keeps brightness for the whole session.
    """

    def __init__(
        self,
        config,
        client: EncoderClient,
        camera: CameraCapture,
        segmentation: SegmentationEngine,
        selfie_factory: Optional[Callable[[], SegmentationStrategy]] = None,
    ):
        self._config = config
        self._client = client
        self._camera = camera
        self._segmentation = segmentation
        self._selfie_factory = selfie_factory

        self._state = SessionState.LOADING
        self._stage = "Initializing..."
        self._pct = 0
        self._error: Optional[str] = None
        self._queries = QueryBook(max_queries=config.max_queries)
        self._embedding = np.zeros(config.embedding_dim, dtype=np.float32)
        self._inference_ms = 0.0
        self._frames_encoded = 0
        self._inferences_inflight = 0
        self._pending_texts: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._thread_work: Set[asyncio.Future] = set()
        self._model_load: Optional[asyncio.Future] = None
        self._settled = asyncio.Event()
        self._stopped = asyncio.Event()
        self._start_time = 0.0

    # -----------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def queries(self) -> QueryBook:
        return self._queries

    @property
    def embedding(self) -> np.ndarray:
        return self._embedding

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time if self._start_time > 0 else 0.0

    @property
    def model_loaded(self) -> bool:
        return self._state in (SessionState.AWAITING_CAMERA, SessionState.LIVE)

    def snapshot(self) -> SessionSnapshot:
        """Everything the rendering layer displays, as one consistent view."""
        return SessionSnapshot(
            state=self._state.value,
            stage=self._stage,
            pct=self._pct,
            embedding=self._embedding.tolist(),
            mask=self._segmentation.mask.tolist(),
            segmentation_mode=self._segmentation.mode,
            queries=self._queries.ranked(),
            inference_ms=round(self._inference_ms, 1),
            frames_encoded=self._frames_encoded,
            error=self._error,
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _offload(self, func, *args) -> asyncio.Future:
        """
        Run blocking work in a worker thread.

        Cancelling a timer cannot interrupt the thread, so the work is
        tracked and stop() waits for it before releasing anything it uses.
        Callers await it through ``asyncio.shield``.
        """
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        self._thread_work.add(work)
        work.add_done_callback(self._thread_work.discard)
        return work

    def _set_state(self, state: SessionState) -> None:
        logger.info("Session state: %s -> %s", self._state.value, state.value)
        self._state = state
        if state in (SessionState.LIVE, SessionState.ERROR):
            self._settled.set()

    def _fail(self, message: str) -> None:
        """Enter the terminal ERROR state; timers stop on their next tick."""
        if self._state is SessionState.ERROR:
            return
        logger.error("Session failed: %s", message)
        self._error = message
        self._set_state(SessionState.ERROR)

    def _on_runtime_fatal(self, exc: LensError) -> None:
        self._fail(str(exc))

    async def start(self) -> None:
        """
        Load models, open the camera, and start the timers.

        Returns once the session is LIVE or has failed.
        """
        self._start_time = time.time()

        await self._client.start(on_fatal=self._on_runtime_fatal)

        if self._selfie_factory is not None:
            self._spawn(self._load_segmentation_model(), "segmentation-model")

        try:
            async for progress in self._client.load():
                self._stage, self._pct = progress.stage, max(self._pct, progress.pct)
        except LensError as exc:
            self._fail(str(exc))
            return
        if self._state is SessionState.ERROR:
            return

        self._stage, self._pct = "Ready", 100
        await self._start_camera()

    async def _start_camera(self) -> None:
        self._set_state(SessionState.AWAITING_CAMERA)
        try:
            await asyncio.to_thread(self._camera.open)
        except PermissionDenied as exc:
            self._fail(str(exc))
            return
        if self._state is SessionState.ERROR:
            return

        self._set_state(SessionState.LIVE)
        self._spawn(self._inference_loop(), "inference-timer")
        self._spawn(self._segmentation_loop(), "segmentation-timer")

    async def wait_until_settled(self) -> SessionState:
        """Wait until the session is LIVE or has failed."""
        await self._settled.wait()
        return self._state

    async def run(self) -> None:
        """Start the session and keep it alive until stop() is called."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Cancel timers, release the camera, and shut the runtime down."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(*list(self._thread_work), return_exceptions=True)
        self._close_unclaimed_model()

        await asyncio.to_thread(self._camera.stop)
        await self._client.stop()
        self._segmentation.close()
        self._stopped.set()
        logger.info("Session stopped.")

    # -----------------------------------------------------------------
    # Segmentation
    # -----------------------------------------------------------------

    async def _load_segmentation_model(self) -> None:
        self._model_load = self._offload(self._selfie_factory)
        try:
            strategy = await asyncio.shield(self._model_load)
        except Exception as exc:
            logger.info("Model segmentation unavailable (%s); keeping brightness", exc)
            return
        self._segmentation.promote(strategy)

    def _close_unclaimed_model(self) -> None:
        """Close a segmentation model that finished loading after shutdown began."""
        load = self._model_load
        if load is None or not load.done() or load.cancelled() or load.exception() is not None:
            return
        strategy = load.result()
        if not self._segmentation.promoted:
            logger.info("Closing %s segmentation loaded during shutdown", strategy.name)
            strategy.close()

    async def _segmentation_loop(self) -> None:
        interval = self._config.segmentation_interval_seconds
        while self._state is SessionState.LIVE:
            await asyncio.sleep(interval)
            frame = self._camera.latest_frame()
            if frame is None:
                continue
            await asyncio.shield(self._offload(self._segmentation.sample, frame))

    # -----------------------------------------------------------------
    # Inference
    # -----------------------------------------------------------------

    async def _inference_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.inference_interval_seconds
        started = loop.time()

        await asyncio.sleep(self._config.inference_initial_delay_seconds)
        self._schedule_inference()

        tick = 1
        while self._state is SessionState.LIVE:
            await asyncio.sleep(max(0.0, started + tick * interval - loop.time()))
            tick += 1
            self._schedule_inference()

    def _schedule_inference(self) -> None:
        """Dispatch one frame without waiting for its result."""
        if self._state is not SessionState.LIVE:
            return
        if self._config.inference_guard and self._inferences_inflight > 0:
            logger.debug("Previous inference still in flight; skipping tick")
            return
        frame = self._camera.latest_frame()
        if frame is None:
            return
        self._inferences_inflight += 1
        self._spawn(self._infer_frame(frame), "inference")

    async def _infer_frame(self, frame: np.ndarray) -> None:
        loop = asyncio.get_running_loop()
        size = self._config.inference_size
        started = loop.time()
        try:
            image_data = frame_to_rgba(frame, size)
            embedding = await self._client.infer(image_data, size, size)
        except InferenceFailure as exc:
            self._handle_inference_failure("frame", exc)
            return
        except LensError:
            # Fatal runtime errors arrive through _on_runtime_fatal
            return
        except Exception as exc:
            logger.exception("Unexpected error encoding frame")
            self._handle_inference_failure("frame", InferenceFailure(str(exc) or type(exc).__name__))
            return
        finally:
            self._inferences_inflight -= 1

        self._inference_ms = (loop.time() - started) * 1000.0
        self._embedding = embedding
        self._frames_encoded += 1
        logger.debug("Frame %d encoded in %.0fms", self._frames_encoded, self._inference_ms)
        await self._rescore()

    async def _rescore(self) -> None:
        """Re-score every tracked query against the embedding just received."""
        texts = self._queries.texts()
        if not texts or self._state is not SessionState.LIVE:
            return
        try:
            results = await self._client.score_batch(texts)
        except InferenceFailure as exc:
            self._handle_inference_failure("batch re-score", exc)
            return
        except LensError:
            return
        except Exception as exc:
            logger.exception("Unexpected error re-scoring queries")
            self._handle_inference_failure("batch re-score", InferenceFailure(str(exc) or type(exc).__name__))
            return
        self._queries.merge(results)

    def _handle_inference_failure(self, what: str, exc: InferenceFailure) -> None:
        if self._config.inference_errors_fatal:
            self._fail(str(exc))
        else:
            logger.warning("Skipping %s after encoder error: %s", what, (str(exc).splitlines() or [""])[0])

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def _encode_once(self, text: str) -> asyncio.Future:
        """Share one in-flight encode_text request per distinct text."""
        pending = self._pending_texts.get(text)
        if pending is None:
            pending = asyncio.ensure_future(self._client.encode_text(text))
            self._pending_texts[text] = pending

            def _clear(future, text=text):
                if self._pending_texts.get(text) is future:
                    del self._pending_texts[text]

            pending.add_done_callback(_clear)
        return pending

    async def submit_query(self, text: str) -> Query:
        """
        Score a new query against the current frame and track it.

        Raises:
            ValueError:       If the text is blank.
            LensError:        If the models are not loaded or the session failed.
            InferenceFailure: If the runtime could not encode the text.
        """
        text = text.strip()
        if not text:
            raise ValueError("Query text is empty")
        if not self.model_loaded:
            raise LensError(f"Session is {self._state.value}; queries are not accepted")

        try:
            result: TextResultEvent = await asyncio.shield(self._encode_once(text))
        except InferenceFailure as exc:
            self._handle_inference_failure(f"query {text!r}", exc)
            raise

        query = self._queries.upsert(result.text, result.raw_score, result.scaled_score)
        logger.info("Query %r scored %.2f", query.text, query.scaled_score)
        return query

    def remove_query(self, text: str) -> bool:
        """Stop tracking a query; in-flight scores for it are dropped on merge."""
        removed = self._queries.remove(text)
        if removed:
            logger.info("Removed query %r", text)
        return removed
