"""Custom exceptions for the gatekeeper application."""


class GatekeeperError(Exception):
    """Base class for gatekeeper exceptions with HTTP status code.

    Subclasses define their status_code so the application's exception
    handler can map them to responses consistently.
    """
    status_code: int = 500
    error_code: str = "gatekeeper_error"

    def __init__(self, message: str = "Gatekeeper error"):
        self.message = message
        super().__init__(message)


class RequestAborted(GatekeeperError):
    """Raised when the caller cancels an outbound call.

    Cancellation is terminal: it is never retried, whatever budget remains.
    Maps to HTTP 499 Client Closed Request.
    """
    status_code = 499
    error_code = "request_aborted"

    def __init__(self, url: str | None = None, message: str = "Request aborted by caller"):
        self.url = url
        super().__init__(message)

