from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

# Error codes shared by the services and the HTTP layer.
INVALID_PHONE = "invalid_phone"
INVALID_REQUEST = "invalid_request"
MISSING_CONFIG = "missing_config"
DELIVERY_FAILED = "delivery_failed"
NOT_FOUND = "not_found"
ALREADY_ASSIGNED = "already_assigned"


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
    def failure(error: str, code: str = "unknown", value: Any = None) -> "Result[T]":
        """A failed outcome; ``value`` may carry partial state such as the ledger row of a failed send."""
        return Result(ok=False, value=value, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
