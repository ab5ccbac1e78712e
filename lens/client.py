# =============================================================================
# Embedding Lens - Encoder Runtime Client
# =============================================================================
# Provides the EncoderClient class that starts the encoder runtime in an
# isolated process and turns the queue-based message protocol into awaitable
# calls for the asyncio orchestrator:
#
#   load()             -> async iterator of ProgressEvent, raises LoadFailure
#   infer(...)         -> normalized image embedding (oldest-pending slot)
#   encode_text(text)  -> TextResultEvent (matched by id)
#   score_batch(texts) -> list of ScoredText (matched by id)
#
# A reader task drains the event queue through the default executor and
# resolves the matching futures. Nothing is retried and nothing times out; a
# hung request simply never resolves.
# =============================================================================

import asyncio
import itertools
import logging
import multiprocessing
import queue
from collections import deque
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional

import numpy as np

from encoder.worker import run_worker
from shared.errors import InferenceFailure, LensError, LoadFailure, ProtocolError
from shared.messages import (
    BatchResultEvent,
    EncodeTextRequest,
    ErrorEvent,
    InferRequest,
    LoadRequest,
    ProgressEvent,
    ReadyEvent,
    ResultEvent,
    ScoreBatchRequest,
    ScoredText,
    ShutdownRequest,
    TextResultEvent,
    parse_event,
    to_wire,
)

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.25


class EncoderClient:
    """
    Async client for the encoder runtime worker.

    Args:
        config:          The Config instance, forwarded to the worker.
        context_factory: Optional RuntimeContext factory for the worker
                         (must be picklable with the default spawn context).
        mp_context:      Object providing ``Queue`` and ``Process``; defaults
                         to the multiprocessing spawn context.
    """

    def __init__(self, config, context_factory: Optional[Callable] = None, mp_context=None):
        ctx = mp_context or multiprocessing.get_context("spawn")
        self._requests = ctx.Queue()
        self._events = ctx.Queue()
        self._process = ctx.Process(
            target=run_worker,
            args=(self._requests, self._events, config, context_factory),
            name="encoder-runtime",
            daemon=True,
        )
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[asyncio.Task] = None
        self._progress: Optional[asyncio.Queue] = None
        self._pending_infer: Deque[asyncio.Future] = deque()
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._on_fatal: Optional[Callable[[LensError], None]] = None
        self._fatal: Optional[LensError] = None
        self._started = False
        self._stopping = False
        self._ready = False

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self, on_fatal: Optional[Callable[[LensError], None]] = None) -> None:
        """Spawn the runtime worker and begin reading its events."""
        self._loop = asyncio.get_running_loop()
        self._progress = asyncio.Queue()
        self._on_fatal = on_fatal
        self._process.start()
        self._started = True
        self._reader = asyncio.create_task(self._read_events(), name="encoder-events")
        logger.info("Encoder runtime process started.")

    async def stop(self) -> None:
        """Ask the worker to exit, wait for it, and fail anything pending."""
        if not self._started or self._stopping:
            return
        self._stopping = True

        if self._process.is_alive():
            self._requests.put(to_wire(ShutdownRequest()))
            await self._loop.run_in_executor(None, self._process.join, 5.0)
        if self._process.is_alive() and hasattr(self._process, "terminate"):
            logger.warning("Encoder runtime did not exit; terminating.")
            self._process.terminate()

        if self._reader is not None:
            await self._reader
        self._fail_pending(LensError("Encoder runtime stopped"))
        logger.info("Encoder runtime process stopped.")

    @property
    def is_ready(self) -> bool:
        return self._ready and self._fatal is None

    @property
    def inflight_inferences(self) -> int:
        return len(self._pending_infer)

    # -----------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------

    def _send(self, message) -> None:
        if self._fatal is not None:
            raise self._fatal
        self._requests.put(to_wire(message))

    async def load(self) -> AsyncIterator[ProgressEvent]:
        """
        Load the models, yielding progress until the runtime is ready.

        Raises:
            LoadFailure: If any load stage fails.
        """
        self._send(LoadRequest())
        while True:
            item = await self._progress.get()
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, ReadyEvent):
                return
            yield item

    async def infer(self, image_data: bytes, width: int, height: int) -> np.ndarray:
        """
        Encode one RGBA frame.

        Raises:
            InferenceFailure: If the runtime reports an error for this frame.
        """
        future = self._loop.create_future()
        self._send(InferRequest(image_data=image_data, width=width, height=height))
        self._pending_infer.append(future)
        return await future

    async def encode_text(self, text: str) -> TextResultEvent:
        """Score one text against the runtime's current image embedding."""
        request_id = next(self._ids)
        future = self._loop.create_future()
        self._pending[request_id] = future
        try:
            self._send(EncodeTextRequest(text=text, id=request_id))
        except LensError:
            self._pending.pop(request_id, None)
            raise
        return await future

    async def score_batch(self, texts: List[str]) -> List[ScoredText]:
        """Re-score many texts; empty when no image has been encoded yet."""
        request_id = next(self._ids)
        future = self._loop.create_future()
        self._pending[request_id] = future
        try:
            self._send(ScoreBatchRequest(texts=list(texts), id=request_id))
        except LensError:
            self._pending.pop(request_id, None)
            raise
        return await future

    # -----------------------------------------------------------------
    # Event handling
    # -----------------------------------------------------------------

    def _next_event(self) -> Optional[dict]:
        """Blocking read with a short timeout so shutdown stays responsive."""
        try:
            return self._events.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            return None

    async def _read_events(self) -> None:
        """Drain runtime events until stopped or the runtime dies."""
        while True:
            payload = await self._loop.run_in_executor(None, self._next_event)
            if payload is None:
                if self._stopping:
                    break
                if not self._process.is_alive():
                    self._fail(LensError("Encoder runtime exited unexpectedly"))
                    break
                continue

            try:
                event = parse_event(payload)
            except ProtocolError as exc:
                self._fail(exc)
                break
            self._dispatch(event)

    def _dispatch(self, event) -> None:
        if isinstance(event, ProgressEvent):
            self._progress.put_nowait(event)
        elif isinstance(event, ReadyEvent):
            self._ready = True
            self._progress.put_nowait(event)
        elif isinstance(event, ResultEvent):
            future = self._pending_infer.popleft() if self._pending_infer else None
            self._resolve(future, np.asarray(event.embedding, dtype=np.float32))
        elif isinstance(event, TextResultEvent):
            self._resolve(self._pending.pop(event.id, None), event)
        elif isinstance(event, BatchResultEvent):
            self._resolve(self._pending.pop(event.id, None), event.results)
        elif isinstance(event, ErrorEvent):
            self._handle_error(event)
        else:
            raise ProtocolError(f"Unhandled runtime event {event!r}")

    def _handle_error(self, event: ErrorEvent) -> None:
        if event.request == "load":
            self._fail(LoadFailure(event.message))
        elif event.fatal:
            self._fail(LensError(event.message))
        elif event.request == "infer":
            future = self._pending_infer.popleft() if self._pending_infer else None
            self._reject(future, InferenceFailure(event.message))
        elif event.id is not None:
            self._reject(self._pending.pop(event.id, None), InferenceFailure(event.message))
        else:
            logger.error("Encoder runtime error: %s", event.message)

    @staticmethod
    def _resolve(future: Optional[asyncio.Future], value) -> None:
        if future is None:
            logger.debug("Dropping response with no pending request")
        elif not future.done():
            future.set_result(value)

    @staticmethod
    def _reject(future: Optional[asyncio.Future], exc: Exception) -> None:
        if future is not None and not future.done():
            future.set_exception(exc)

    def _fail_pending(self, exc: LensError) -> None:
        while self._pending_infer:
            self._reject(self._pending_infer.popleft(), exc)
        for request_id in list(self._pending):
            self._reject(self._pending.pop(request_id), exc)

    def _fail(self, exc: LensError) -> None:
        """Record a fatal error and surface it to every waiter."""
        if self._fatal is not None:
            return
        self._fatal = exc
        logger.error("Encoder runtime failed: %s", exc)
        self._fail_pending(exc)
        self._progress.put_nowait(exc)
        if self._on_fatal is not None:
            self._on_fatal(exc)
