import asyncio

import numpy as np
import pytest

from conftest import THREADS, failing_context, fake_context
from lens.client import EncoderClient
from shared.errors import InferenceFailure, LoadFailure


def make_client(config, factory=fake_context):
    return EncoderClient(config, context_factory=factory, mp_context=THREADS)


async def load_all(client):
    return [progress async for progress in client.load()]


class TestLoad:
    def test_progress_is_monotonic_and_ends_ready(self, config):
        async def scenario():
            client = make_client(config)
            await client.start()
            try:
                progress = await load_all(client)
                return progress, client.is_ready
            finally:
                await client.stop()

        progress, ready = asyncio.run(scenario())
        assert [p.pct for p in progress] == [5, 25, 55, 100]
        assert progress[-1].stage == "Ready"
        assert ready

    def test_failure_raises_and_reports(self, config):
        fatal = []

        async def scenario():
            client = make_client(config, failing_context)
            await client.start(on_fatal=fatal.append)
            seen = []
            try:
                with pytest.raises(LoadFailure, match="vision weights unavailable"):
                    async for progress in client.load():
                        seen.append(progress.pct)
                with pytest.raises(LoadFailure):
                    await client.encode_text("a cat")
            finally:
                await client.stop()
            return seen, client.is_ready

        seen, ready = asyncio.run(scenario())
        assert seen == [5, 25]
        assert not ready
        assert len(fatal) == 1
        assert isinstance(fatal[0], LoadFailure)


class TestRequests:
    def test_infer_then_score(self, config, rgba_frame):
        async def scenario():
            client = make_client(config)
            await client.start()
            try:
                await load_all(client)
                before = await client.score_batch(["a cat"])
                embedding = await client.infer(rgba_frame, 224, 224)
                scored = await client.encode_text("a cat")
                batch = await client.score_batch(["a cat", "a dog"])
                return before, embedding, scored, batch, client.inflight_inferences
            finally:
                await client.stop()

        before, embedding, scored, batch, inflight = asyncio.run(scenario())
        assert before == []
        assert embedding.shape == (512,)
        assert np.linalg.norm(embedding) == pytest.approx(1.0, abs=1e-5)
        assert scored.text == "a cat"
        assert scored.scaled_score == pytest.approx(scored.raw_score * 100.0)
        assert [r.text for r in batch] == ["a cat", "a dog"]
        assert batch[0].raw_score == pytest.approx(scored.raw_score, abs=1e-6)
        assert inflight == 0

    def test_concurrent_inferences_resolve_in_order(self, config):
        rng = np.random.default_rng(11)
        frames = [rng.integers(0, 256, size=224 * 224 * 4, dtype=np.uint8).tobytes() for _ in range(3)]

        async def scenario():
            client = make_client(config)
            await client.start()
            try:
                await load_all(client)
                results = await asyncio.gather(*(client.infer(f, 224, 224) for f in frames))
                again = await client.infer(frames[1], 224, 224)
                return results, again
            finally:
                await client.stop()

        results, again = asyncio.run(scenario())
        assert not np.allclose(results[0], results[1])
        np.testing.assert_allclose(results[1], again, rtol=1e-6)

    def test_bad_frame_is_recoverable(self, config, rgba_frame):
        async def scenario():
            client = make_client(config)
            await client.start()
            try:
                await load_all(client)
                with pytest.raises(InferenceFailure, match="expected"):
                    await client.infer(b"\x00" * 16, 224, 224)
                embedding = await client.infer(rgba_frame, 224, 224)
                return embedding, client.is_ready
            finally:
                await client.stop()

        embedding, ready = asyncio.run(scenario())
        assert embedding.shape == (512,)
        assert ready


class TestStop:
    def test_stop_is_idempotent(self, config):
        async def scenario():
            client = make_client(config)
            await client.start()
            await load_all(client)
            await client.stop()
            await client.stop()
            return client

        client = asyncio.run(scenario())
        assert client.inflight_inferences == 0

    def test_stop_without_start_is_noop(self, config):
        client = make_client(config)
        asyncio.run(client.stop())
