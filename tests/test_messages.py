import pytest

from shared.errors import ProtocolError
from shared.messages import (
    BatchResultEvent,
    EncodeTextRequest,
    ErrorEvent,
    InferRequest,
    LoadRequest,
    ProgressEvent,
    ScoredText,
    ShutdownRequest,
    parse_event,
    parse_request,
    to_wire,
)


class TestRequests:
    def test_round_trip_each_request(self):
        requests = [
            LoadRequest(),
            InferRequest(image_data=b"\x00" * 16, width=2, height=2),
            EncodeTextRequest(text="a cat", id=3),
            ShutdownRequest(),
        ]
        for request in requests:
            assert parse_request(to_wire(request)) == request

    def test_unknown_type(self):
        with pytest.raises(ProtocolError):
            parse_request({"type": "explode"})

    def test_missing_field(self):
        with pytest.raises(ProtocolError):
            parse_request({"type": "encode_text", "text": "no id"})

    def test_infer_dimensions_must_be_positive(self):
        with pytest.raises(ProtocolError):
            parse_request({"type": "infer", "image_data": b"", "width": 0, "height": 224})


class TestEvents:
    def test_batch_result(self):
        event = parse_event({
            "type": "batch_result",
            "id": 7,
            "results": [{"text": "a cat", "raw_score": 0.3, "scaled_score": 30.0}],
        })
        assert isinstance(event, BatchResultEvent)
        assert event.results == [ScoredText(text="a cat", raw_score=0.3, scaled_score=30.0)]

    def test_error_defaults_to_fatal(self):
        event = parse_event({"type": "error", "message": "boom"})
        assert isinstance(event, ErrorEvent)
        assert event.fatal is True
        assert event.id is None

    def test_progress_pct_range(self):
        assert parse_event(to_wire(ProgressEvent(stage="Ready", pct=100))).pct == 100
        with pytest.raises(ProtocolError):
            parse_event({"type": "progress", "stage": "x", "pct": 101})

    def test_request_is_not_an_event(self):
        with pytest.raises(ProtocolError):
            parse_event(to_wire(LoadRequest()))
