"""
Error taxonomy for settlement, checkout, OTP and ledger operations.

Every error carries the HTTP status it maps to so the API layer can render it
without a per-route translation table.
"""


class PilgrimPayError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.code.replace("_", " ")
        super().__init__(self.detail)


class AuthenticationFailure(PilgrimPayError):
    status_code = 401
    code = "authentication_failure"


class InvalidSignature(AuthenticationFailure):
    code = "invalid_signature"


class AuthorizationFailure(PilgrimPayError):
    status_code = 403
    code = "authorization_failure"


class ValidationFailure(PilgrimPayError):
    status_code = 400
    code = "validation_failure"


class InvalidPrice(ValidationFailure):
    code = "invalid_price"


class CodeMismatch(ValidationFailure):
    code = "code_mismatch"


class NotFound(PilgrimPayError):
    status_code = 404
    code = "not_found"


class InvalidPackage(NotFound):
    code = "invalid_package"


class OtpNotFound(NotFound):
    code = "otp_not_found"


class StateConflict(PilgrimPayError):
    status_code = 409
    code = "state_conflict"


class NotPayable(StateConflict):
    code = "not_payable"


class OtpAlreadyConsumed(StateConflict):
    code = "otp_already_consumed"


class PaymentNotSuccessful(StateConflict):
    code = "payment_not_successful"


class AmountMismatch(PilgrimPayError):
    status_code = 403
    code = "amount_mismatch"


class UpstreamFailure(PilgrimPayError):
    status_code = 502
    code = "upstream_failure"


class EmailDispatchFailed(UpstreamFailure):
    code = "email_dispatch_failed"


class Expired(PilgrimPayError):
    status_code = 410
    code = "expired"


class SettlementFailure(PilgrimPayError):
    # Webhook path only: a signed charge whose booking cannot be priced.
    status_code = 500
    code = "settlement_failed"
