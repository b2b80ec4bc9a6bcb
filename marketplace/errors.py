"""Error taxonomy. Each error knows the HTTP status it maps to."""


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400


class InvalidSignature(MarketplaceError):
    status_code = 401


class AuthorizationError(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class StateConflict(MarketplaceError):
    status_code = 409


class RefundNotAllowed(StateConflict):
    status_code = 400


class RateLimited(MarketplaceError):
    status_code = 429


class ExternalServiceError(MarketplaceError):
    status_code = 502

    def __init__(self, message: str, service: str = "unknown"):
        super().__init__(message)
        self.service = service


class CourierBookingFailed(ExternalServiceError):
    def __init__(self, message: str, attempts=None):
        super().__init__(message, service="courier")
        # [(provider, error message), ...]
        self.attempts = attempts or []
