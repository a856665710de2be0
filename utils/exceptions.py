"""
Delivery domain errors
======================

Every error a delivery, wallet or commission operation can raise. Each class
carries the HTTP status the API layer maps it to, so services raise and routes
never translate errors by hand.
"""

from typing import Any, Dict, Optional


class DeliveryBayError(Exception):
    """Base class for domain errors"""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DeliveryBayError):
    """Malformed input, mismatched confirmation code or malformed URL. No mutation happened."""

    status_code = 400
    code = "validation_error"


class NotFoundError(DeliveryBayError):
    """Unknown order, wallet, rule or withdrawal request"""

    status_code = 404
    code = "not_found"


class ConflictError(DeliveryBayError):
    """Double assignment, duplicate pending withdrawal"""

    status_code = 409
    code = "conflict"


class InsufficientFundsError(ConflictError):
    """Withdrawal amount exceeds the wallet balance"""

    code = "insufficient_funds"


class PreconditionFailedError(DeliveryBayError):
    """Wrong phase for the requested transition, or terminal order"""

    status_code = 412
    code = "precondition_failed"


class RoutingProviderError(DeliveryBayError):
    """External routing provider failed; always absorbed by the route fallbacks"""

    status_code = 502
    code = "downstream_degraded"


class SettlementStepError(DeliveryBayError):
    """A settlement step failed; completed steps are kept and the step is resumable"""

    code = "partial_settlement_failure"

    def __init__(self, step_name: str, message: str):
        super().__init__(f"Settlement step '{step_name}' failed: {message}", {"step": step_name})
        self.step_name = step_name
