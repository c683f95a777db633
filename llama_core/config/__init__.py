"""Config subsystem public API.

Provides:
    get_config() -> AggregatedConfig (llm + logging sections)
    as_dict()    -> dict representation
    ConfigError  -> raised on validation / unknown key
"""

from .loader import (  # noqa: F401
    AggregatedConfig,
    get_config,
    as_dict,
    ConfigError,
    clear_config_cache,
)
from .schemas import (  # noqa: F401
    GenerationConfig,
    LLMConfig,
    LoggingConfig,
    TruncationConfig,
)

__all__ = [
    "AggregatedConfig",
    "get_config",
    "as_dict",
    "ConfigError",
    "clear_config_cache",
    "GenerationConfig",
    "LLMConfig",
    "LoggingConfig",
    "TruncationConfig",
]
