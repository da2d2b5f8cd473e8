"""
Error taxonomy for the billing core.

Every error is recoverable from the caller's point of view: it carries an
HTTP status, a stable machine code, a message that can be shown to a user
as-is, and a context dict (booking id, attempted operation, ...) so the
caller can correct the input or retry.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    status_code = 400
    code = "billing_error"
    retryable = False
    default_message = "The request could not be processed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "context": {k: str(v) if not isinstance(v, (int, float, bool, list, dict)) else v
                        for k, v in self.context.items()},
            "retryable": self.retryable,
        }


# ─── Booking lifecycle ────────────────────────────────────────────────────────

class InvalidTransition(BillingError):
    status_code = 409
    code = "invalid_transition"
    default_message = "This status change is not allowed for the booking"


class MissingDeliveryEstimate(BillingError):
    status_code = 422
    code = "missing_delivery_estimate"
    default_message = "Set an expected report delivery time before confirming the booking"


class InvalidBookingState(BillingError):
    status_code = 409
    code = "invalid_booking_state"
    default_message = "The booking is not in a state that allows this action"


class InvalidBookingRequest(BillingError):
    code = "invalid_booking_request"
    default_message = "The booking request is incomplete or invalid"


class BookingNotFound(BillingError):
    status_code = 404
    code = "booking_not_found"
    default_message = "Booking not found"


class ReportNotFound(BillingError):
    status_code = 404
    code = "report_not_found"
    default_message = "No report has been uploaded for this booking"


class PaymentNotVerified(BillingError):
    status_code = 403
    code = "payment_not_verified"
    default_message = "The report is available once your payment to the lab has been verified"


# ─── Payments & commission ────────────────────────────────────────────────────

class AlreadyRecorded(BillingError):
    status_code = 409
    code = "already_recorded"
    default_message = "User payment has already been recorded for this booking"


class InvalidPaymentMethod(BillingError):
    code = "invalid_payment_method"
    default_message = "Invalid payment method"


class InvalidCommissionRate(BillingError):
    code = "invalid_commission_rate"
    default_message = "Commission rate must be between 0 and 100"


class DuplicateRequest(BillingError):
    status_code = 409
    code = "duplicate_request"
    default_message = "A pending request already exists"


class RequestNotFound(BillingError):
    status_code = 404
    code = "request_not_found"
    default_message = "Commission change request not found"


# ─── Partners ─────────────────────────────────────────────────────────────────

class PartnerNotFound(BillingError):
    status_code = 404
    code = "partner_not_found"
    default_message = "Partner not found"


class PartnerSuspended(BillingError):
    status_code = 403
    code = "partner_suspended"
    default_message = "This partner is suspended and cannot take new bookings"


# ─── Invoicing ────────────────────────────────────────────────────────────────

class NoEligibleBookings(BillingError):
    status_code = 404
    code = "no_eligible_bookings"
    default_message = "No unbilled commissions found for this period"


class InvalidBillingPeriod(BillingError):
    code = "invalid_billing_period"
    default_message = "Invalid billing period"


class InvoiceNotFound(BillingError):
    status_code = 404
    code = "invoice_not_found"
    default_message = "Invoice not found"


class InvoiceAlreadyPaid(BillingError):
    status_code = 409
    code = "invoice_already_paid"
    default_message = "Invoice is already marked as paid"


class InvoiceGenerationError(BillingError):
    status_code = 500
    code = "invoice_generation_failed"
    default_message = "Invoice generation failed and was rolled back"


# ─── Shared ───────────────────────────────────────────────────────────────────

class ConcurrentModification(BillingError):
    status_code = 409
    code = "concurrent_modification"
    retryable = True
    default_message = "The record was changed by another request; reload it and try again"


class ComputationError(BillingError):
    status_code = 422
    code = "computation_error"
    default_message = "Inconsistent input data for this computation"
