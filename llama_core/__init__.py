"""Core package: config, events, metrics and the llm session layer."""

__version__ = "0.1.0"
