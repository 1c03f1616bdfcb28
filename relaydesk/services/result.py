from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorCode(str, Enum):
    ALREADY_ACCEPTED = "already_accepted"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    NOT_ACCEPTED = "not_accepted"
    RESOLUTION_REQUIRED = "resolution_required"
    STATE_CONFLICT = "state_conflict"
    NOT_FOUND = "not_found"
    TARGET_REQUIRED = "target_required"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T = None) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: Union[ErrorCode, str] = "unknown") -> "Result[T]":
        if isinstance(code, ErrorCode):
            code = code.value
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
