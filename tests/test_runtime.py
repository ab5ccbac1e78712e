import numpy as np
import pytest

from conftest import THREADS, failing_context, fake_context
from encoder.runtime import handle_request
from encoder.worker import run_worker
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
    ScoreBatchRequest,
    ShutdownRequest,
    TextResultEvent,
    parse_event,
    to_wire,
)


class TestLoad:
    def test_progress_then_ready(self, context):
        events = list(handle_request(context, LoadRequest()))

        progress = [e for e in events if isinstance(e, ProgressEvent)]
        assert [p.pct for p in progress] == [5, 25, 55, 100]
        assert progress[-1].stage == "Ready"
        assert isinstance(events[-1], ReadyEvent)
        assert context.loaded
        assert context.vision.is_ready and context.text.is_ready

    def test_failure_is_fatal_and_stops_progress(self, config):
        context = failing_context(config)
        events = list(handle_request(context, LoadRequest()))

        assert [type(e) for e in events] == [ProgressEvent, ProgressEvent, ErrorEvent]
        assert [e.pct for e in events[:2]] == [5, 25]
        error = events[-1]
        assert error.fatal is True
        assert error.request == "load"
        assert "vision weights unavailable" in error.message
        assert "Traceback" in error.message
        assert not context.loaded

    def test_second_load_only_reports_ready(self, loaded_context):
        events = list(handle_request(loaded_context, LoadRequest()))
        assert [type(e) for e in events] == [ProgressEvent, ReadyEvent]


class TestInfer:
    def test_result_becomes_current_embedding(self, loaded_context, rgba_frame):
        previous = loaded_context.image_embedding
        (event,) = handle_request(loaded_context, InferRequest(image_data=rgba_frame, width=224, height=224))

        assert isinstance(event, ResultEvent)
        assert len(event.embedding) == 512
        assert abs(np.linalg.norm(event.embedding) - 1.0) < 1e-5
        assert loaded_context.image_embedding is not previous
        np.testing.assert_allclose(loaded_context.image_embedding, event.embedding, rtol=1e-6)

    def test_bad_buffer_is_recoverable(self, loaded_context):
        (event,) = handle_request(loaded_context, InferRequest(image_data=b"\x00" * 8, width=224, height=224))
        assert isinstance(event, ErrorEvent)
        assert event.fatal is False
        assert event.request == "infer"
        assert loaded_context.image_embedding is None

    def test_infer_before_load(self, context, rgba_frame):
        (event,) = handle_request(context, InferRequest(image_data=rgba_frame, width=224, height=224))
        assert isinstance(event, ErrorEvent)
        assert event.fatal is False


class TestTextScoring:
    def test_a_cat_scenario(self, loaded_context):
        (first,) = handle_request(loaded_context, EncodeTextRequest(text="a cat", id=1))
        assert isinstance(first, TextResultEvent)
        assert first.raw_score == 0.0
        assert first.scaled_score == 0.0
        assert first.id == 1

        loaded_context.image_embedding = loaded_context.text.cache.get("a cat")
        (second,) = handle_request(loaded_context, EncodeTextRequest(text="a cat", id=2))
        assert second.raw_score == pytest.approx(1.0, abs=1e-5)
        assert second.scaled_score == pytest.approx(100.0, abs=1e-3)
        assert loaded_context.text.calls == 1

    def test_batch_scores_every_text(self, loaded_context, rgba_frame):
        list(handle_request(loaded_context, InferRequest(image_data=rgba_frame, width=224, height=224)))
        (event,) = handle_request(loaded_context, ScoreBatchRequest(texts=["a cat", "a dog"], id=9))

        assert isinstance(event, BatchResultEvent)
        assert event.id == 9
        assert [r.text for r in event.results] == ["a cat", "a dog"]
        for result in event.results:
            assert -1.0 <= result.raw_score <= 1.0
            assert result.scaled_score == pytest.approx(result.raw_score * 100.0)

    def test_batch_without_image_is_empty(self, loaded_context):
        (event,) = handle_request(loaded_context, ScoreBatchRequest(texts=["a cat"], id=4))
        assert event.results == []
        assert loaded_context.text.calls == 0

    def test_text_error_echoes_id(self, context):
        (event,) = handle_request(context, EncodeTextRequest(text="a cat", id=5))
        assert isinstance(event, ErrorEvent)
        assert event.id == 5
        assert event.request == "encode_text"
        assert event.fatal is False

    def test_shutdown_is_not_a_handler(self, context):
        with pytest.raises(ProtocolError):
            list(handle_request(context, ShutdownRequest()))


class TestWorkerLoop:
    def test_serves_until_shutdown(self, config):
        requests, events = THREADS.Queue(), THREADS.Queue()
        for message in (LoadRequest(), EncodeTextRequest(text="a cat", id=1), ShutdownRequest()):
            requests.put(to_wire(message))
        requests.put(to_wire(EncodeTextRequest(text="never handled", id=2)))

        run_worker(requests, events, config, fake_context)

        received = []
        while not events.empty():
            received.append(parse_event(events.get()))
        assert isinstance(received[-1], TextResultEvent)
        assert received[-1].id == 1
        assert sum(isinstance(e, ReadyEvent) for e in received) == 1

    def test_malformed_request_reports_error(self, config):
        requests, events = THREADS.Queue(), THREADS.Queue()
        requests.put({"type": "bogus"})
        requests.put(to_wire(ShutdownRequest()))

        run_worker(requests, events, config, fake_context)

        event = parse_event(events.get())
        assert isinstance(event, ErrorEvent)
        assert event.fatal is False
