"""Session exception hierarchy.

Every exception carries an `error_type` from `llama_core.errors`.
"""


class SessionError(Exception):
    """Base session exception."""

    error_type = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        # Text already streamed before the failure (set by generate()).
        self.partial_text = ""


class ModelLoadError(SessionError):
    """Raised when the engine cannot construct the model or its context.

    The message always includes the model path.
    """

    error_type = "model-load-failed"


class TokenizationError(SessionError):
    """Engine returned an empty (or negative) token count for the prompt."""

    error_type = "tokenization-failed"


class ContextTooSmall(SessionError):
    """Prompt budget left after reserving output is below the minimum."""

    error_type = "context-too-small"


class DecodeError(SessionError):
    """Engine batch decode failed."""

    error_type = "decode-failed"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class InternalError(SessionError):
    """Invariant violation inside a call (e.g. handle vanished mid-loop).

    Fatal to the call only; the session stays usable.
    """

    error_type = "internal"


class InvalidState(SessionError):
    """Operation attempted without a loaded model, or with a bad callback."""

    error_type = "invalid-state"


class InvalidHandle(InvalidState):
    """Registry handle is unknown or refers to a destroyed session."""
