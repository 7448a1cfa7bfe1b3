"""Error taxonomy shared by the logic tool modules."""

from __future__ import annotations

from typing import Iterable, Optional


class LogicToolError(Exception):
    """Base class for all failures raised by the logic tool core."""


class ConfigurationError(LogicToolError):
    """Raised for malformed module data or inconsistent stored records."""


class ParseError(LogicToolError):
    """Raised when a boolean expression cannot be parsed."""

    def __init__(self, message: str, *, expression: str = "", position: Optional[int] = None) -> None:
        self.expression = expression
        self.position = position
        if position is not None:
            message = f"{message} at position {position} in {expression!r}"
        elif expression:
            message = f"{message} in {expression!r}"
        super().__init__(message)


class VariableMismatchError(LogicToolError):
    """Raised when an expression references variables outside the atomic set."""

    def __init__(self, missing: Iterable[str], *, expression: str = "", atomic_variables: str = "") -> None:
        self.missing = tuple(sorted(set(missing)))
        self.expression = expression
        self.atomic_variables = atomic_variables
        names = ", ".join(self.missing)
        super().__init__(
            f"Expression {expression!r} uses variables not in {atomic_variables!r}: {names}"
        )


class StorageError(LogicToolError):
    """Raised when a persistence step fails; the enclosing create branch is rolled back."""


class ConcurrencyViolation(LogicToolError):
    """Raised when a record is missing right after an insert-if-absent."""


class NotFoundError(LogicToolError):
    """Raised when a module, bank or attempt does not exist."""


class AttemptClosedError(LogicToolError):
    """Raised when input is applied to an attempt that was already submitted."""
