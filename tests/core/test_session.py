import threading
import time

import pytest

from llama_core import __version__
from llama_core.config.schemas.llm import GenerationConfig, LLMConfig
from llama_core.llm.exceptions import (
    ContextTooSmall,
    DecodeError,
    InternalError,
    InvalidState,
    ModelLoadError,
    TokenizationError,
)
from llama_core.llm.session import LlamaSession, get_version
from llama_core.llm.stub_engine import EOS, StubEngine


class RecordingEngine(StubEngine):
    """Stub engine that records resource lifecycle and decode batches."""

    def __init__(self) -> None:
        super().__init__()
        self.log: list[tuple[str, object]] = []
        self.batches: list[tuple[int, list[bool]]] = []

    def create_model(self, path, params):
        m = super().create_model(path, params)
        self.log.append(("create_model", m))
        return m

    def create_context(self, model, params):
        c = super().create_context(model, params)
        self.log.append(("create_context", c))
        return c

    def create_sampler(self, model, stages):
        s = super().create_sampler(model, stages)
        self.log.append(("create_sampler", s))
        return s

    def free_model(self, model):
        self.log.append(("free_model", model))
        super().free_model(model)

    def free_context(self, ctx):
        self.log.append(("free_context", ctx))
        super().free_context(ctx)

    def free_sampler(self, sampler):
        self.log.append(("free_sampler", sampler))
        super().free_sampler(sampler)

    def clear_memory(self, ctx):
        self.log.append(("clear_memory", ctx))
        super().clear_memory(ctx)

    def decode(self, ctx, batch):
        self.batches.append((len(batch), list(batch.logits)))
        return super().decode(ctx, batch)

    def calls(self, name: str) -> list:
        return [obj for op, obj in self.log if op == name]


def _cfg(**kw) -> GenerationConfig:
    base = dict(context_size=512, batch_size=64, max_output_tokens=16, seed=42)
    base.update(kw)
    return GenerationConfig(**base)


def _session(engine=None, **kw) -> LlamaSession:
    return LlamaSession(
        engine=engine or StubEngine(), config=_cfg(**kw), llm_config=LLMConfig()
    )


# load / unload ----------------------------------------------------------------

def test_load_and_generate_text(model_file):
    s = _session()
    assert not s.is_model_loaded()
    s.load_model(model_file)
    assert s.is_model_loaded()
    text = s.generate("Hello world, hello there.")
    assert isinstance(text, str)
    assert 0 < len(text) <= 16
    assert not s.is_generating()
    assert s.get_last_error() == ""


def test_missing_model_file_raises_with_path(tmp_path, captured_events):
    s = _session()
    missing = tmp_path / "nope.gguf"
    with pytest.raises(ModelLoadError) as ei:
        s.load_model(missing)
    assert str(missing) in ei.value.message
    assert str(missing) in s.get_last_error()
    assert not s.is_model_loaded()
    names = [n for n, _ in captured_events]
    assert "ModelLoadFailed" in names


def test_reload_frees_previous_handles_in_order(model_file):
    eng = RecordingEngine()
    s = _session(eng)
    s.load_model(model_file)
    first_model = eng.calls("create_model")[0]
    first_ctx = eng.calls("create_context")[0]
    first_sampler = eng.calls("create_sampler")[0]
    s.load_model(model_file)
    assert first_model.freed and first_ctx.freed
    frees = [
        (op, obj)
        for op, obj in eng.log
        if op.startswith("free_")
    ]
    assert frees == [
        ("free_sampler", first_sampler),
        ("free_context", first_ctx),
        ("free_model", first_model),
    ]
    assert s.is_model_loaded()
    assert len(eng.calls("create_model")) == 2


def test_context_failure_frees_model(model_file):
    class NoContextEngine(RecordingEngine):
        def create_context(self, model, params):
            return None

    eng = NoContextEngine()
    s = _session(eng)
    with pytest.raises(ModelLoadError) as ei:
        s.load_model(model_file)
    assert str(model_file) in ei.value.message
    model = eng.calls("create_model")[0]
    assert model.freed
    assert eng.calls("free_model") == [model]
    assert not s.is_model_loaded()


def test_unload_is_idempotent(model_file, captured_events):
    s = _session()
    s.load_model(model_file)
    s.unload_model()
    s.unload_model()
    assert not s.is_model_loaded()
    unloaded = [p for n, p in captured_events if n == "ModelUnloaded"]
    assert len(unloaded) == 1
    assert unloaded[0]["reason"] == "unload"


def test_context_manager_releases(model_file):
    with _session() as s:
        s.load_model(model_file)
        assert s.is_model_loaded()
    assert not s.is_model_loaded()


# generation preconditions ---------------------------------------------------

def test_generate_without_model_is_invalid_state():
    s = _session()
    with pytest.raises(InvalidState):
        s.generate("hi")
    assert not s.is_generating()
    assert s.get_last_error() == "Model not loaded"


def test_non_callable_callback_rejected(model_file):
    s = _session()
    s.load_model(model_file)
    with pytest.raises(InvalidState):
        s.generate_stream("hi", None)  # type: ignore[arg-type]


def test_tokenization_failure(model_file):
    class EmptyTokenizer(StubEngine):
        def tokenize(self, model, text, add_bos):
            return []

    s = _session(EmptyTokenizer())
    s.load_model(model_file)
    with pytest.raises(TokenizationError):
        s.generate("anything")
    assert s.get_last_error() == "Failed to tokenize prompt"


def test_context_too_small(model_file):
    # 128 - 64 - 16 = 48 prompt tokens available, below the minimum of 64
    s = _session(context_size=128, max_output_tokens=64)
    s.load_model(model_file)
    with pytest.raises(ContextTooSmall):
        s.generate("x" * 100)
    assert "Context too small" in s.get_last_error()
    assert not s.is_generating()


def test_short_prompt_fits_small_context(model_file):
    s = _session(context_size=128, max_output_tokens=64)
    s.load_model(model_file)
    s.generate("short")


def test_long_prompt_is_truncated(model_file, captured_events):
    s = _session(context_size=256, max_output_tokens=16)
    s.load_model(model_file)
    text = s.generate("The quick brown fox jumps. " * 30)
    assert isinstance(text, str)
    truncated = [p for n, p in captured_events if n == "PromptTruncated"]
    assert len(truncated) == 1
    assert truncated[0]["max_prompt_tokens"] == 256 - 16 - 16
    assert truncated[0]["kept_tokens"] <= truncated[0]["max_prompt_tokens"]
    assert truncated[0]["original_tokens"] == 30 * 27 + 1


# decode loop ------------------------------------------------------------------

def test_zero_max_output_tokens(model_file, captured_events):
    s = _session(max_output_tokens=0)
    s.load_model(model_file)
    got = []
    s.generate_stream("hello", got.append)
    assert got == []
    done = [p for n, p in captured_events if n == "GenerationCompleted"]
    assert done[-1]["status"] == "ok"
    assert done[-1]["output_tokens"] == 0


def test_prompt_is_ingested_in_chunks(model_file):
    eng = RecordingEngine()
    s = _session(eng, batch_size=8, max_output_tokens=2)
    s.load_model(model_file)
    s.generate("a" * 30)  # 31 tokens with BOS
    prompt_batches = eng.batches[:4]
    assert [n for n, _ in prompt_batches] == [8, 8, 8, 7]
    flags = [f for _, fl in prompt_batches for f in fl]
    assert flags == [False] * 30 + [True]
    # each generated token decoded alone with logits requested
    assert all(b == (1, [True]) for b in eng.batches[4:])


def test_same_seed_same_output(model_file):
    a = _session(seed=7, max_output_tokens=24)
    b = _session(seed=7, max_output_tokens=24)
    a.load_model(model_file)
    b.load_model(model_file)
    prompt = "Once upon a time, there was a"
    first = a.generate(prompt)
    assert first == b.generate(prompt)
    assert first == a.generate(prompt)


def test_end_of_generation_stops(model_file, captured_events):
    class EosAfterThree(StubEngine):
        def __init__(self):
            super().__init__()
            self.n = 0

        def sample(self, sampler, ctx):
            self.n += 1
            if self.n > 3:
                return EOS
            return super().sample(sampler, ctx)

    s = _session(EosAfterThree(), max_output_tokens=50)
    s.load_model(model_file)
    got = []
    s.generate_stream("hello", got.append)
    assert len(got) == 3
    done = [p for n, p in captured_events if n == "GenerationCompleted"][-1]
    assert done["stop_reason"] == "eog"


def test_negative_token_stops(model_file):
    class NoLogits(StubEngine):
        def sample(self, sampler, ctx):
            return -1

    s = _session(NoLogits())
    s.load_model(model_file)
    assert s.generate("hello") == ""
    assert s.get_last_error() == ""


def test_decode_error_keeps_partial_text(model_file):
    class FailingDecode(StubEngine):
        def __init__(self):
            super().__init__()
            self.calls = 0

        def decode(self, ctx, batch):
            self.calls += 1
            # prompt is one batch; fail on the third generated token
            if self.calls == 4:
                return 1
            return super().decode(ctx, batch)

    s = _session(FailingDecode())
    s.load_model(model_file)
    with pytest.raises(DecodeError) as ei:
        s.generate("hello")
    assert ei.value.status == 1
    assert "status 1" in ei.value.message
    assert len(ei.value.partial_text) == 3
    assert "status 1" in s.get_last_error()
    assert not s.is_generating()


def test_callback_exception_propagates(model_file):
    s = _session()
    s.load_model(model_file)

    def boom(piece):
        raise RuntimeError("ui gone")

    with pytest.raises(RuntimeError):
        s.generate_stream("hello", boom)
    assert s.get_last_error().startswith("callback-failed")
    assert not s.is_generating()
    # session stays usable
    assert s.generate("hello")


def test_unload_from_callback_is_internal_error(model_file):
    s = _session()
    s.load_model(model_file)
    with pytest.raises(InternalError):
        s.generate_stream("hello", lambda piece: s.unload_model())
    assert not s.is_model_loaded()
    assert not s.is_generating()


# cancellation -----------------------------------------------------------------

def test_cancel_from_callback_stops_after_n_tokens(model_file, captured_events):
    s = _session(max_output_tokens=100)
    s.load_model(model_file)
    got = []

    def cb(piece):
        got.append(piece)
        assert s.is_generating()
        if len(got) == 3:
            s.cancel_generation()

    s.generate_stream("hello", cb)
    assert len(got) == 3
    assert s.get_last_error() == ""
    cancelled = [p for n, p in captured_events if n == "GenerationCancelled"]
    assert cancelled and cancelled[0]["stage"] == "decode"
    assert cancelled[0]["output_tokens"] == 3


def test_cancel_while_idle_has_no_effect(model_file):
    s = _session(max_output_tokens=5)
    s.load_model(model_file)
    s.cancel_generation()
    assert len(s.generate("hello")) > 0


@pytest.mark.timeout(10)
def test_cancel_from_other_thread(model_file):
    s = _session(max_output_tokens=400, context_size=1024)
    s.load_model(model_file)
    got = []

    def slow(piece):
        got.append(piece)
        time.sleep(0.005)

    t = threading.Thread(target=s.generate_stream, args=("hello", slow))
    t.start()
    deadline = time.time() + 5
    while not s.is_generating() and time.time() < deadline:
        time.sleep(0.001)
    while len(got) < 2 and time.time() < deadline:
        time.sleep(0.001)
    s.cancel_generation()
    t.join(timeout=5)
    assert not t.is_alive()
    assert 2 <= len(got) < 400
    assert not s.is_generating()


# sampler / prefix -------------------------------------------------------------

def test_sampler_rebuilt_only_when_sampling_changes(model_file):
    eng = RecordingEngine()
    s = _session(eng)
    s.load_model(model_file)
    assert len(eng.calls("create_sampler")) == 1
    s.generate("hello")
    s.generate("hello", s.current_config.with_overrides(max_output_tokens=4))
    assert len(eng.calls("create_sampler")) == 1
    s.generate("hello", s.current_config.with_overrides(temperature=0.2))
    assert len(eng.calls("create_sampler")) == 2
    # back to the session config: the override sampler is not reused
    s.generate("hello")
    assert len(eng.calls("create_sampler")) == 3


def test_memory_cleared_and_prefix_reported(model_file, captured_events):
    eng = RecordingEngine()
    s = _session(eng, max_output_tokens=2)
    s.load_model(model_file)
    s.generate("abc")
    s.generate("abcdef")
    assert len(eng.calls("clear_memory")) == 2
    started = [p for n, p in captured_events if n == "GenerationStarted"]
    assert started[0]["reusable_prefix_tokens"] == 0
    # BOS + "abc"
    assert started[1]["reusable_prefix_tokens"] == 4


def test_get_version_names_engine():
    assert get_version(StubEngine()) == f"{__version__} (stub)"


def test_get_version_uses_configured_engine():
    assert get_version().endswith("(stub)")


def test_batch_override_larger_than_load_time_is_capped(model_file):
    eng = RecordingEngine()
    s = _session(eng, context_size=1024, batch_size=64, max_output_tokens=2)
    s.load_model(model_file)
    text = s.generate("a" * 200, s.current_config.with_overrides(batch_size=256))
    assert isinstance(text, str)
    assert s.get_last_error() == ""
    # 201 prompt tokens ingested in chunks no larger than the context batch
    prompt_sizes = [n for n, _ in eng.batches[:4]]
    assert prompt_sizes == [64, 64, 64, 9]


def test_smaller_batch_override_is_honoured(model_file):
    eng = RecordingEngine()
    s = _session(eng, batch_size=64, max_output_tokens=1)
    s.load_model(model_file)
    s.generate("a" * 20, s.current_config.with_overrides(batch_size=8))
    assert [n for n, _ in eng.batches[:3]] == [8, 8, 5]
