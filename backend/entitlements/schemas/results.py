"""Structured operation result returned by every mutating call."""

from pydantic import BaseModel


class OperationResult(BaseModel):
    """``success`` plus a user-facing message; failures carry a stable ``error_code``."""

    success: bool
    message: str
    error_code: str | None = None
