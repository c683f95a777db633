"""Pytest configuration ensuring project root is importable.

Adds repository root and src/ to sys.path explicitly, points the config
loader at the repo `configs/` directory and forces the stub engine.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _isolate_global_state(monkeypatch):  # noqa: D401
    """Ensure config/engine/registry/metrics state does not leak between tests.

    - Clear aggregated config cache and engine cache
    - Default LLAMA_CONFIG_DIR to the repo configs/ and force the stub engine
    - Reset metrics, event listeners and the session registry
    """
    from llama_core import metrics
    from llama_core.config import clear_config_cache
    from llama_core.eventbus import reset_for_tests as reset_bus
    from llama_core.events import reset_listeners_for_tests
    from llama_core.llm.factory import clear_engine_cache
    from llama_core.llm.registry import registry

    if "LLAMA_CONFIG_DIR" not in os.environ:
        monkeypatch.setenv("LLAMA_CONFIG_DIR", str(ROOT / "configs"))
    monkeypatch.setenv("LLAMA_SESSION_FAKE", "1")
    clear_config_cache()
    clear_engine_cache()
    metrics.reset_for_tests()
    reset_bus()
    reset_listeners_for_tests()
    try:
        yield
    finally:
        registry.clear()
        clear_config_cache()
        clear_engine_cache()


@pytest.fixture
def model_file(tmp_path: Path) -> Path:
    p = tmp_path / "tiny.gguf"
    p.write_bytes(b"GGUF-stub")
    return p


@pytest.fixture
def captured_events():
    """List of (name, payload) for every event emitted during the test."""
    from llama_core.events import subscribe

    got: list[tuple[str, dict]] = []
    unsub = subscribe(lambda name, payload: got.append((name, payload)))
    yield got
    unsub()
