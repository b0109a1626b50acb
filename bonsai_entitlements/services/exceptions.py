"""Domain-specific exceptions.

Denials (quota exhausted, feature not in tier) are decision outcomes and are
returned as structured results; only the failures below are raised.
"""


class ServiceError(Exception):
    pass


class ValidationError(ServiceError):
    pass


class SubscriptionNotFound(ValidationError):
    pass


class Unauthorized(ServiceError):
    pass


class UpstreamUnavailable(ServiceError):
    pass


class SignatureInvalid(ServiceError):
    pass


class BillingProviderError(ServiceError):
    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code
