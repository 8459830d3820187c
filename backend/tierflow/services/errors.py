# Overview: Domain error taxonomy shared by the ledger, directory and rollup services.

"""
Tierflow domain errors.

These are domain errors, not technical errors: each one says the caller asked
for something the business rules forbid. Routes map them to HTTP statuses via
`status_code`; everything else is a 500.

- ValidationError         400  malformed input (bad quantities, missing fields)
- ScopeViolation          403  principal lacks hierarchy authority over the target
- NotFound                404  referenced order/node/product does not exist
- InvalidStateTransition  409  order not in a state compatible with the request
- ConcurrentModification  409  conditional update lost a race; idempotent
                               transitions convert this into success
"""

from __future__ import annotations


class TierflowError(ValueError):
    """Base class for domain errors."""

    status_code = 400

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        data = {"error": self.message, "kind": self.kind}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(TierflowError):
    status_code = 400


class ScopeViolation(TierflowError):
    status_code = 403


class NotFound(TierflowError):
    status_code = 404


class InvalidStateTransition(TierflowError):
    status_code = 409


class ConcurrentModification(TierflowError):
    status_code = 409
