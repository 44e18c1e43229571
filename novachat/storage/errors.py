from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A user write collided with an existing email or Google id, or hit a missing user.

    ``detail`` names the offending ``field`` (or ``user_id``) so the API can
    echo it back in the 409 envelope.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")
