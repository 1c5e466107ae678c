"""Result object for operations whose failure is an expected outcome.

Rack and slot operations report refusals (rack still holds items, slot out
of range) as values instead of exceptions so the caller can show them as
plain messages.
"""
from dataclasses import dataclass
from typing import Optional, TypeVar, Generic

T = TypeVar('T')


@dataclass
class Result(Generic[T]):
    """Outcome of an operation.

    Attributes:
        success: Whether the operation succeeded.
        value: The return value on success, None on failure.
        error: Error message on failure, None on success.
        error_type: One of the ErrorType constants on failure.

    Usage:
        result = inventory.move_pledge("PLG-2025-000001", "a-3")
        if not result:
            show_message(result.error)
    """
    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def ok(cls, value: T = None) -> 'Result[T]':
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: str, error_type: str = None) -> 'Result[T]':
        return cls(success=False, error=error, error_type=error_type)

    def __bool__(self) -> bool:
        return self.success

    def unwrap(self) -> T:
        """Get the value, raising if the operation failed.

        Raises:
            ValueError: If the operation failed.
        """
        if not self.success:
            raise ValueError(f"Result unwrap failed: {self.error}")
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.success else default


class ErrorType:
    """Standard error type constants."""
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    NOT_EMPTY = "NOT_EMPTY"
    DUPLICATE = "DUPLICATE"
