"""Custom exceptions for backend gateway calls."""


class BackendError(Exception):
    """
    Raised when a call to the backend did not produce a usable response.

    The outcome on the backend side is unknown: the write may have been applied
    even though the response was lost.
    """

    def __init__(self, message: str, detail=None):
        super().__init__(message)
        self.detail = detail if detail is not None else message


class BackendUnavailableError(BackendError):
    """Raised when the backend could not be reached (connection error, timeout)."""
    pass


class BackendStatusError(BackendError):
    """Raised when the backend answered with a non-success HTTP status."""

    def __init__(self, status_code: int, detail=None):
        super().__init__(f"Backend responded with status {status_code}", detail)
        self.status_code = status_code
