class MarketplaceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class InvalidState(MarketplaceError):
    """Status transition not permitted from the current state."""

    status_code = 400


class ValidationError(MarketplaceError):
    status_code = 400


class ResourceBusy(MarketplaceError):
    status_code = 409


class GatewayFailure(MarketplaceError):
    status_code = 502
