class MarketError(Exception):
    """Base class for every failure a store turns into a notification."""

    # Whether trying the same call again could succeed
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BackendError(MarketError):
    """A backend call failed (query, constraint, connectivity)."""

    retryable = True


class AuthApiError(BackendError):
    """The auth module rejected the request (bad credentials, duplicate user, bad token)."""

    retryable = False


class PermissionDeniedError(BackendError):
    """The row-level access policy rejected a write."""

    retryable = False


class ConflictError(BackendError):
    """A write collided with a unique constraint."""

    retryable = False


class NotAuthenticatedError(MarketError):
    def __init__(self, message: str = "You must be logged in to do that"):
        super().__init__(message)


class ContactUnavailableError(MarketError):
    def __init__(self, message: str = "Seller's contact information is not available"):
        super().__init__(message)
