from __future__ import annotations


class SoftcrateError(Exception):
    status_code = 500
    error = "internal_error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.error)
        self.detail = detail or self.error


class ConfigurationError(SoftcrateError):
    # missing store binding or credentials: abort the whole request
    status_code = 500
    error = "configuration_error"


class ValidationError(SoftcrateError):
    status_code = 400
    error = "invalid_request"


class AuthError(SoftcrateError):
    status_code = 401
    error = "unauthorized"


class NotFoundError(SoftcrateError):
    status_code = 404
    error = "not_found"


class OrderNotFoundError(NotFoundError):
    error = "order_not_found"


class ConflictError(SoftcrateError):
    status_code = 409
    error = "conflict"


class InvalidTransitionError(ConflictError):
    error = "invalid_transition"


class OutOfStockError(ConflictError):
    error = "out_of_stock"


class StoreError(SoftcrateError):
    status_code = 503
    error = "store_unavailable"


class MalformedRecordError(SoftcrateError):
    error = "malformed_record"
