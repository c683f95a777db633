"""Configuration loading & validation.

Precedence (last wins): base.yaml → overrides.local.yaml → ENV (LLAMA__*).

Sections are validated by their schema classes
(`llama_core.config.schemas.*`); unknown keys are rejected.
"""
from __future__ import annotations

import logging
import os
import pathlib
import threading
from functools import lru_cache
from typing import Any, Dict

import yaml
from llama_core import metrics
from llama_core.errors import validate_error_type
from pydantic import BaseModel, ConfigDict, ValidationError

from .schemas.llm import LLMConfig
from .schemas.observability import LoggingConfig

logger = logging.getLogger(__name__)


class AggregatedConfig(BaseModel):
    schema_version: int = 1
    llm: LLMConfig = LLMConfig()
    logging: LoggingConfig = LoggingConfig()

    model_config = ConfigDict(extra="forbid")


DEFAULT_CONFIG_DIR = "configs"
ENV_PREFIX = "LLAMA__"


class ConfigError(Exception):
    pass


def _load_yaml_if_exists(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _merge_dict(
    base: Dict[str, Any], override: Dict[str, Any]
) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _merge_dict(base[k], v)
        else:
            base[k] = v
    return base


def _cast_env_value(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        try:
            return float(value)
        except ValueError:
            return value


def _apply_env(cfg: Dict[str, Any]) -> None:
    prefix_len = len(ENV_PREFIX)
    for env_key, value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        path_parts = env_key[prefix_len:].lower().split("__")
        target = cfg
        for part in path_parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            target = target[part]
        target[path_parts[-1]] = _cast_env_value(value)
        dotted_path = ".".join(path_parts)
        metrics.inc("env_override_total", {"path": dotted_path})
        logger.info(
            "config env override path=%s value=*** source=env", dotted_path
        )


_lock = threading.Lock()


def _resolve_config_dir() -> pathlib.Path:
    """Resolve config directory each call honoring env var changes."""
    return pathlib.Path(os.getenv("LLAMA_CONFIG_DIR", DEFAULT_CONFIG_DIR))


def _normalize_and_validate(raw: Dict[str, Any]) -> None:
    """Cross-field bounds validation.

    Per-field ranges live in the schemas; this covers relations between
    fields that a single validator cannot see:
      - llm.generation.max_output_tokens < llm.generation.context_size
      - llm.generation.batch_size <= llm.generation.context_size
    Emits metrics on violations and raises ConfigError.
    """
    errors: list[tuple[str, str, str]] = []  # (path, code, msg)
    gen = (raw.get("llm") or {}).get("generation") or {}
    ctx = gen.get("context_size")
    mot = gen.get("max_output_tokens")
    batch = gen.get("batch_size")
    if isinstance(ctx, int) and isinstance(mot, int) and mot >= ctx:
        errors.append(
            (
                "llm.generation.max_output_tokens",
                "config-out-of-range",
                "must be < context_size",
            )
        )
    if isinstance(ctx, int) and isinstance(batch, int) and batch > ctx:
        errors.append(
            (
                "llm.generation.batch_size",
                "config-out-of-range",
                "must be <= context_size",
            )
        )
    if errors:
        for path, code, _ in errors:
            validate_error_type(code)
            metrics.inc(
                "config_validation_errors_total",
                {"path": path, "code": code},
            )
        details = ", ".join(f"{p}:{c}:{m}" for p, c, m in errors)
        raise ConfigError(f"config validation failed: {details}")


@lru_cache(maxsize=1)
def get_config() -> AggregatedConfig:  # noqa: D401
    with _lock:
        cfg_dir = _resolve_config_dir()
        base_cfg = _load_yaml_if_exists(cfg_dir / "base.yaml")
        overrides_cfg = _load_yaml_if_exists(cfg_dir / "overrides.local.yaml")
        merged = _merge_dict(base_cfg, overrides_cfg)
        _apply_env(merged)
        _normalize_and_validate(merged)
        try:
            return AggregatedConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigError(str(e)) from e


def clear_config_cache() -> None:
    """Clear cached config (primarily for tests)."""
    get_config.cache_clear()


def as_dict() -> Dict[str, Any]:
    return get_config().model_dump()
