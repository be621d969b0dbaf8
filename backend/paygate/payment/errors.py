"""
Error taxonomy for the payment engine.

Only malformed input and infrastructure faults are raised. "Not yet paid",
amount/destination mismatches and unverifiable networks are ordinary results
(see ``VerificationOutcome`` and ``AdmissionResult``).
"""

from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for payment engine errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.retryable:
            body["retryable"] = True
        if self.details:
            body["details"] = self.details
        return body


class MalformedInputError(PaymentError):
    """Bad address, amount, reference or network. Never reaches the chain."""

    status_code = 400


class ChainUnavailableError(PaymentError):
    """Transient chain-access fault (RPC timeout, node unavailable)."""

    status_code = 500
    retryable = True


class EntropyUnavailableError(PaymentError):
    """The OS randomness source could not produce a reference."""

    status_code = 500


class AdmissionConflictError(PaymentError):
    """Another admission for the same reference is still in flight."""

    status_code = 409


class DuplicateEntityError(PaymentError):
    """The entity store already holds an entity for this reference."""

    status_code = 409


class NotFoundError(PaymentError):
    status_code = 404
