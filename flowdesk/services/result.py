"""Outcome of an operation whose failures are expected rather than exceptional."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# Failure codes answered with something other than 400.
FAILURE_STATUS = {
    "no_agent": 409,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = "unknown") -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return FAILURE_STATUS.get(self.error_code, 400)
