from __future__ import annotations

from typing import Optional


class BackendError(Exception):
    """Raised when the row store, object store or admin auth API reports an error."""

    def __init__(self, operation: str, message: str, *, status_code: Optional[int] = None):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
        self.status_code = status_code


__all__ = ["BackendError"]
