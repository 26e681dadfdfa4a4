"""
Caller-visible error kinds for the review engine.

Every failure a request can hit maps to exactly one of these classes, and each
class carries the HTTP status the JSON API answers with.
"""


class ReviewServiceError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class InvalidRequest(ReviewServiceError):
    """Malformed request"""

    status_code = 400


class InvalidQuality(InvalidRequest):
    """Quality must be an integer between 0 and 5"""


class MissingUser(ReviewServiceError):
    """Missing authenticated user"""

    status_code = 401


class NotFound(ReviewServiceError):
    """Word not found in your collection"""

    status_code = 404


class Conflict(ReviewServiceError):
    """Word was reviewed concurrently; re-fetch and retry"""

    status_code = 409


class StoreUnavailable(ReviewServiceError):
    """Storage is temporarily unavailable; retry the request"""

    status_code = 503
