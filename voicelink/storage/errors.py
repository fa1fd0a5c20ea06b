from __future__ import annotations

from typing import Optional


class ConstraintViolation(Exception):
    """An insert collided with an existing key or referenced a missing identity."""

    def __init__(
        self, message: str, *, table: Optional[str] = None, field: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.table = table
        self.field = field

    @property
    def detail(self) -> dict:
        return {key: value for key, value in (("table", self.table), ("field", self.field)) if value}


__all__ = ["ConstraintViolation"]
