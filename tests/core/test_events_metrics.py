import pytest

from llama_core import metrics
from llama_core.config.schemas.llm import GenerationConfig, LLMConfig
from llama_core.errors import map_exception, validate_error_type
from llama_core.eventbus import emit as bus_emit
from llama_core.eventbus import subscribe as bus_subscribe
from llama_core.events import GenerationChunk, emit, subscribe
from llama_core.llm.exceptions import DecodeError, ModelLoadError
from llama_core.llm.session import LlamaSession
from llama_core.llm.stub_engine import StubEngine


def test_eventbus_basic_dispatch():
    got = []
    bus_subscribe("TestEvent", lambda p: got.append(p["value"]))
    bus_subscribe("TestEvent", lambda p: got.append(p["value"] * 2))
    bus_emit("TestEvent", {"value": 3})
    assert sorted(got) == [3, 6]
    snap = metrics.snapshot()["counters"]
    assert any("events_emitted_total" in k for k in snap)


def test_eventbus_handler_exception_isolated():
    got = []

    def bad(_):
        raise RuntimeError("boom")

    bus_subscribe("X", bad)
    bus_subscribe("X", lambda p: got.append(1))
    bus_emit("X", {})
    assert got == [1]
    assert metrics.counter_value("handler_exceptions_total", {"event": "X"}) == 1


def test_unsubscribe_stops_delivery():
    got = []
    unsub = subscribe(lambda name, payload: got.append(name))
    emit(GenerationChunk(request_id="r", session_id="s", seq=0, token=5, text="a"))
    unsub()
    emit(GenerationChunk(request_id="r", session_id="s", seq=1, token=6, text="b"))
    assert got == ["GenerationChunk"]


def test_generation_event_sequence(model_file, captured_events):
    s = LlamaSession(
        engine=StubEngine(),
        config=GenerationConfig(max_output_tokens=5, seed=1),
        llm_config=LLMConfig(),
        session_id="sess-1",
    )
    s.load_model(model_file)
    s.generate("hi")
    names = [n for n, _ in captured_events]
    assert names[0] == "ModelLoaded"
    assert names[1] == "GenerationStarted"
    assert names[2:7] == ["GenerationChunk"] * 5
    assert names[7] == "GenerationCompleted"
    chunks = [p for n, p in captured_events if n == "GenerationChunk"]
    assert [c["seq"] for c in chunks] == [0, 1, 2, 3, 4]
    assert all(c["session_id"] == "sess-1" for c in chunks)
    request_ids = {p["request_id"] for n, p in captured_events if "request_id" in p}
    assert len(request_ids) == 1


def test_metrics_follow_session_lifecycle(model_file):
    s = LlamaSession(
        engine=StubEngine(),
        config=GenerationConfig(max_output_tokens=4, seed=1),
        llm_config=LLMConfig(),
    )
    s.load_model(model_file)
    s.generate("hi")
    s.unload_model()
    assert metrics.counter_value("models_loaded_total", {"engine": "stub"}) == 1
    assert metrics.counter_value("models_unloaded_total", {"engine": "stub"}) == 1
    assert metrics.counter_value("generation_completed_total", {"status": "ok"}) == 1
    assert metrics.counter_value("generation_tokens_total") == 4
    hist = metrics.snapshot()["histograms"]
    assert hist["generation_latency_ms"]["count"] == 1


def test_error_taxonomy():
    assert validate_error_type("decode-failed") == "decode-failed"
    with pytest.raises(AssertionError):
        validate_error_type("not-a-code")
    assert map_exception(DecodeError("x", 1), "generation") == "decode-failed"
    assert map_exception(RuntimeError("x"), "callback") == "callback-failed"
    assert map_exception(ModelLoadError("x"), "generation") == "model-load-failed"
    assert map_exception(OSError("x"), "load") == "internal"
    assert map_exception(ValueError("x"), "generation") == "internal"
