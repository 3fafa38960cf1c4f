from __future__ import annotations

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base error for chat orchestration, carrying a stable code for the UI."""

    def __init__(
        self,
        message: str,
        error_code: str,
        is_retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.is_retryable = is_retryable
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "error_code": self.error_code,
            "is_retryable": self.is_retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code}: {self.message})"


class LLMConfigError(ChatError):
    """Missing credential or unusable provider setup. Fatal at initialization."""

    def __init__(self, error_code: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"LLM is not configured ({error_code})", error_code, is_retryable=False)


class ModelStreamError(ChatError):
    """Transport failure while opening or consuming a model stream."""

    def __init__(self, error_code: str, message: Optional[str] = None, is_retryable: bool = True) -> None:
        super().__init__(message or f"Model stream failed ({error_code})", error_code, is_retryable=is_retryable)


class TurnLimitExceededError(ChatError):
    def __init__(self, max_turns: int) -> None:
        super().__init__(
            f"Conversation too long: the model requested more than {max_turns} rounds for one message.",
            "conversation_too_long",
            details={"max_turns": max_turns},
        )


class SessionBusyError(ChatError):
    def __init__(self, handle: str) -> None:
        super().__init__(
            "A previous message is still being processed for this conversation.",
            "session_busy",
            is_retryable=True,
            details={"session_id": handle},
        )


class SessionNotFoundError(ChatError):
    def __init__(self, handle: str) -> None:
        super().__init__("Conversation not found.", "session_not_found", details={"session_id": handle})
