"""
Error taxonomy raised by the structure engine.

Services raise these; the app factory renders them as JSON with the matching
HTTP status. Anything else escaping a service is treated as an internal error.
"""
from __future__ import annotations


class StructureError(RuntimeError):
    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        out: dict = {"error": self.kind, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFound(StructureError):
    status_code = 404
    kind = "not_found"


class Conflict(StructureError):
    status_code = 409
    kind = "conflict"


class BadRequest(StructureError):
    status_code = 400
    kind = "bad_request"


class InvalidMove(BadRequest):
    """No sibling in the requested direction; nothing was changed."""

    kind = "invalid_move"


class IntegrityError(StructureError):
    """A published pin references a version row that does not exist. Never retried."""

    status_code = 500
    kind = "integrity_error"
