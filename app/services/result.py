from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode:
    """Error codes shared by store calls and pipeline stages."""

    DB_ERROR = "db_error"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    OVERLAP = "overlap"
    INVALID_WINDOW = "invalid_window"
    CAPACITY = "capacity"
    FORBIDDEN = "forbidden"
    INTERPRETATION_FAILED = "interpretation_failed"
    MUTATION_FAILED = "mutation_failed"
    DISPATCH_FAILED = "dispatch_failed"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
