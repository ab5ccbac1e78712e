import asyncio
import queue
import sys
import threading
import zlib
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest
import torch

# Add repository root to sys.path so the top-level packages import in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Config  # noqa: E402
from encoder.cache import TextEmbeddingCache  # noqa: E402
from encoder.runtime import RuntimeContext  # noqa: E402
from encoder.text import TextEncoder  # noqa: E402
from encoder.vision import VisionEncoder  # noqa: E402

DIM = 512

# Runs the "isolated" runtime in a thread so fakes need no pickling
THREADS = SimpleNamespace(Queue=queue.Queue, Process=threading.Thread)


def seeded_vector(key: bytes, scale: float = 3.0) -> np.ndarray:
    """Deterministic, deliberately unnormalized vector for a key."""
    rng = np.random.default_rng(zlib.crc32(key))
    return (rng.standard_normal(DIM) * scale).astype(np.float32)


class FakeVisionEncoder(VisionEncoder):
    """Vision encoder whose 'model' hashes the pixels into a vector."""

    def __init__(self, fail_load: bool = False):
        super().__init__("fake/clip", "cpu", torch.float32)
        self.fail_load = fail_load
        self.calls = 0

    def load_processor(self):
        self._processor = object()

    def load_model(self):
        if self.fail_load:
            raise OSError("vision weights unavailable")
        self._model = object()

    def _forward(self, image):
        self.calls += 1
        return seeded_vector(image.tobytes())


class FakeTextEncoder(TextEncoder):
    """Text encoder whose 'model' hashes the text into a vector."""

    def __init__(self, cache=None):
        super().__init__("fake/clip", "cpu", torch.float32, cache=cache)
        self.calls = 0

    def load(self):
        self._tokenizer = object()
        self._model = object()

    def _forward(self, text):
        self.calls += 1
        return seeded_vector(text.encode("utf-8"), scale=5.0)


def fake_context(config) -> RuntimeContext:
    return RuntimeContext(
        vision=FakeVisionEncoder(),
        text=FakeTextEncoder(cache=TextEmbeddingCache(config.text_cache_size)),
    )


def failing_context(config) -> RuntimeContext:
    return RuntimeContext(
        vision=FakeVisionEncoder(fail_load=True),
        text=FakeTextEncoder(),
    )


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` on the event loop until it holds or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def config():
    return Config(device="cpu")


@pytest.fixture
def context(config):
    return fake_context(config)


@pytest.fixture
def loaded_context(context):
    context.vision.load_processor()
    context.vision.load_model()
    context.text.load()
    context.loaded = True
    return context


@pytest.fixture
def rgba_frame():
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(224, 224, 4), dtype=np.uint8).tobytes()
