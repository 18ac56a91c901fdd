"""Typed errors raised by the tenant access gate and billing services.

Every error carries an HTTP status and a user-facing message.  The
application-level handler installed by :func:`api.main.create_app`
renders them as ``{"error": message}`` with the error's status code, so
handlers simply raise and never build error responses themselves.
"""

from __future__ import annotations

from typing import Any


class CarwashError(Exception):
    """Base class for errors that map directly onto an HTTP response."""

    status_code: int = 400

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON body sent to the client."""
        return {"error": self.message}


# ---------------------------------------------------------------------------
# Access gate
# ---------------------------------------------------------------------------


class NotAuthenticated(CarwashError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class TenantNotSpecified(CarwashError):
    status_code = 400

    def __init__(self, message: str = "Tenant not specified; use your tenant subdomain") -> None:
        super().__init__(message)


class TenantNotFound(CarwashError):
    status_code = 404

    def __init__(self, message: str = "Tenant not found") -> None:
        super().__init__(message)


class NotAMember(CarwashError):
    status_code = 403

    def __init__(self, message: str = "You are not a member of this tenant") -> None:
        super().__init__(message)


class InsufficientRole(CarwashError):
    status_code = 403

    def __init__(self, message: str = "You do not have permission to perform this action") -> None:
        super().__init__(message)


class SuperAdminRequired(CarwashError):
    status_code = 403

    def __init__(self, message: str = "Platform administrators only") -> None:
        super().__init__(message)


_BLOCK_MESSAGES: dict[str, str] = {
    "inactive": "This account has been deactivated",
    "no_plan": "No plan is connected to this account",
    "trial_expired": "Your trial or billing period has expired",
    "payment_overdue": "An invoice is pending payment",
}


class PlanBlocked(CarwashError):
    """The tenant's billing state forbids the operation."""

    status_code = 403

    def __init__(self, reason: str, pending_invoice_id: str | None = None) -> None:
        super().__init__(_BLOCK_MESSAGES.get(reason, "Plan blocked"))
        self.reason = reason
        self.pending_invoice_id = pending_invoice_id

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "reason": self.reason,
            "pendingInvoiceId": self.pending_invoice_id,
        }


# ---------------------------------------------------------------------------
# Session relay
# ---------------------------------------------------------------------------


class InvalidRelayToken(CarwashError):
    """Relay token failed verification.

    Never rendered as JSON: the session relay catches it and redirects
    the browser to the login page.
    """


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class InvalidRequest(CarwashError):
    status_code = 400


class ResourceNotFound(CarwashError):
    status_code = 404


class DuplicateInvoice(CarwashError):
    status_code = 409

    def __init__(self, invoice_id: str | None = None) -> None:
        super().__init__("An unpaid invoice already exists for this plan")
        self.invoice_id = invoice_id

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "invoiceId": self.invoice_id}


class InvoiceNotPayable(CarwashError):
    status_code = 400


class GatewaySignatureInvalid(CarwashError):
    status_code = 400

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class GatewayUnavailable(CarwashError):
    """Timeout or transport failure talking to the payment gateway.  Retryable."""

    status_code = 503

    def __init__(self, message: str = "Payment gateway unavailable, please retry") -> None:
        super().__init__(message)


class GatewayRejected(CarwashError):
    """The gateway answered but refused the request."""

    status_code = 502


class CronUnauthorized(CarwashError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Unauthorized")
