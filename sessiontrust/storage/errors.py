from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke one of the store's integrity rules.

    The memory store raises it for a duplicate email, a refresh token that is
    already bound to another session, a device that does not belong to the
    session's user, and writes that reference a missing user. ``detail``
    names the offending field or ids.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
