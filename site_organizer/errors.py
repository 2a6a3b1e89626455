"""
Error types and the result wrapper shared by every write path.

Primary-entity failures are raised as OrganizerError subclasses and turned
into the response envelope by the handler in main.py. Secondary relation
failures are never raised: they travel back as RelationWarning entries inside
a Result.
"""
from dataclasses import dataclass, field
from typing import Any, Optional


class OrganizerError(Exception):
    status_code = 500

    def __init__(self, message: str, data: Any = None, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.data = data
        self.details = details

    def to_envelope(self) -> dict:
        body = {"success": False, "error": self.message}
        if self.data is not None:
            body["data"] = self.data
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(OrganizerError):
    """Missing or malformed input; nothing was written."""
    status_code = 400


class ImportParseError(ValidationError):
    """The uploaded file could not be parsed; the whole import is aborted."""


class NotFoundError(OrganizerError):
    status_code = 404


class ConflictError(OrganizerError):
    """Duplicate URL on create/update. `data` carries the existing record."""
    status_code = 409


class InUseError(ConflictError):
    """Category/tag still referenced. `data` carries the referencing sites."""


class UndoUnavailableError(OrganizerError):
    status_code = 410


class UpstreamError(OrganizerError):
    """A database call failed. `details` keeps the driver message."""
    status_code = 502


@dataclass
class RelationWarning:
    stage: str
    status: str
    details: Any = None

    def to_dict(self) -> dict:
        return {"stage": self.stage, "status": self.status, "details": self.details}


@dataclass
class Result:
    value: Any = None
    warnings: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings

    def extend(self, other: "Result") -> "Result":
        self.warnings.extend(other.warnings)
        return self

    def warning_dicts(self) -> list[dict]:
        return [w.to_dict() for w in self.warnings]
