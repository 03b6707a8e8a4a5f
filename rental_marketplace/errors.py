from __future__ import annotations


class MarketplaceError(RuntimeError):
    pass


class AuthError(MarketplaceError):
    pass


class ValidationError(MarketplaceError):
    pass


class QueryError(MarketplaceError):
    def __init__(self, message: str, *, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class NotFoundError(MarketplaceError):
    pass


class RequestCancelledError(MarketplaceError):
    pass


class SignupError(MarketplaceError):
    pass


class CompensationFailedError(SignupError):
    """The identity created during a failed sign-up could not be deleted.

    ``identity_id`` names the orphaned account and ``original_error`` is the
    failure that triggered the compensation.
    """

    def __init__(self, message: str, *, identity_id: str, original_error: BaseException):
        super().__init__(message)
        self.identity_id = identity_id
        self.original_error = original_error
