from __future__ import annotations


class ForgeError(RuntimeError):
    """Base class for operator-facing orchestration errors."""


class ValidationError(ForgeError):
    """Raised when an operation is requested with bad input or in the wrong state."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ForgeError):
    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier
