# backend/plate_history/exceptions.py


class PlateHistoryError(Exception):
    """Base class for storage failures raised by the plate history core."""


class IngestionError(PlateHistoryError):
    """The detection write transaction failed and was rolled back."""


class HistoryReadError(PlateHistoryError):
    """A history page, count or filter-options query failed."""


class RecognitionError(Exception):
    """The recognition service call failed before any result was stored."""


class RecognitionUnavailableError(RecognitionError):
    """The recognition service could not be reached."""


class RecognitionAPIError(RecognitionError):
    """The recognition service answered with an error status or an unreadable body."""

    def __init__(self, status_code, body=None, message=None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"Recognition API error: {status_code}")
