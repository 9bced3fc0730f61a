from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode:
    """Failure categories reported by collaborator calls."""

    PROVIDER_ERROR = "provider_error"
    DOWNLOAD_FAILED = "download_failed"
    SEND_FAILED = "send_failed"
    AGENT_ERROR = "agent_error"
    TTS_ERROR = "tts_error"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


@dataclass
class Result(Generic[T]):
    """Outcome of a provider, storage or agent call; callers branch on ``ok``."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = ErrorCode.UNKNOWN) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
