from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

AUTH_EXHAUSTED = "auth_exhausted"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 1

    @staticmethod
    def success(value: T, attempts: int = 1) -> "Result[T]":
        return Result(ok=True, value=value, attempts=attempts)

    @staticmethod
    def failure(error: str, code: str = "unknown", attempts: int = 1) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, attempts=attempts)

    @staticmethod
    def exhausted(error: str, attempts: int = 2) -> "Result[T]":
        """Session refresh did not help: the retried call failed on auth again."""
        return Result(ok=False, error=error, error_code=AUTH_EXHAUSTED, attempts=attempts)

    @property
    def is_exhausted(self) -> bool:
        return not self.ok and self.error_code == AUTH_EXHAUSTED

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
