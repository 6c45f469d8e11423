"""
Error Taxonomy

Every failure the ledger reports carries a machine-readable ``kind`` and a
human message. "Needs confirmation" is not an error and lives in
``outcomes``.
"""

from typing import Any, Dict, Optional, Sequence, Tuple


class DuesLedgerError(Exception):
    """Base class for ledger errors"""
    kind = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"kind": self.kind, "error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DuesLedgerError, ValueError):
    """Malformed or out-of-range input; never retried automatically"""
    kind = "validation_error"


class NotFoundError(DuesLedgerError, LookupError):
    """Referenced entity does not exist in the caller's organization"""
    kind = "not_found"


class PermissionDeniedError(DuesLedgerError):
    """Caller's role does not allow the operation"""
    kind = "permission_denied"


class ConflictError(DuesLedgerError):
    """State-machine or uniqueness violation"""
    kind = "conflict"


class TransientFailure(DuesLedgerError):
    """Storage failure during a batch; the batch has been rolled back"""
    kind = "transient_failure"


class DuplicateKeyError(Exception):
    """Raised by storage backends when a primary or unique key collides"""

    def __init__(self, table: str, fields: Sequence[str], key: Tuple):
        self.table = table
        self.fields = tuple(fields)
        self.key = tuple(key)
        super().__init__(f"Duplicate key in {table} {self.fields}: {self.key}")
