"""
Error taxonomy for the identity pipeline.

Per-record errors (malformed, late-arriving, unresolved) are collected and
returned alongside a partial commit. IntervalIntegrityViolation is raised:
it signals an engine bug, not bad data.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all pipeline errors."""

    stage = "engine"

    def __init__(self, message: str, record: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.record = record

    def to_dead_letter(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "error_type": type(self).__name__,
            "error": self.message,
            "record": self.record,
        }


class MalformedInputError(EngineError):
    """A required identifier or field is missing; the record is skipped."""

    stage = "validate"


class LateArrivingConflictError(EngineError):
    """Fact timestamp precedes the current version start for its key."""

    stage = "merge"

    def __init__(
        self,
        message: str,
        record: Optional[Dict[str, Any]] = None,
        key_type: str = None,
        natural_key: str = None,
        current_valid_from=None,
    ):
        super().__init__(message, record)
        self.key_type = key_type
        self.natural_key = natural_key
        self.current_valid_from = current_valid_from

    def to_dead_letter(self) -> Dict[str, Any]:
        out = super().to_dead_letter()
        out["key_type"] = self.key_type
        out["natural_key"] = self.natural_key
        out["current_valid_from"] = self.current_valid_from
        return out


class UnresolvedIdentityError(EngineError):
    """No identifier present to resolve; the row cannot produce a fact."""

    stage = "resolve"


class IntervalIntegrityViolation(EngineError):
    """SCD2 post-condition failed after a merge; the key's update is rolled back."""

    stage = "integrity"

    def __init__(self, message: str, table: str = None, natural_key: str = None):
        super().__init__(message)
        self.table = table
        self.natural_key = natural_key
