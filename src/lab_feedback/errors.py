"""Error taxonomy shared by services, adapters and the API layer."""


class LabFeedbackError(Exception):
    """Base error carrying a stable code and an HTTP status."""

    code = "LAB_FEEDBACK_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        """Return the API error payload."""
        return {"detail": self.message, "code": self.code}


class NotFoundError(LabFeedbackError):
    """Raised when a referenced record does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(LabFeedbackError):
    """Raised when a participant acts outside their conversations."""

    code = "PERMISSION_DENIED"
    status_code = 403


class ValidationFailureError(LabFeedbackError):
    """Raised for malformed input or illegal state transitions."""

    code = "VALIDATION_FAILED"
    status_code = 400


class DetectorUnavailableError(LabFeedbackError):
    """Raised on detector network errors, timeouts and non-200 responses."""

    code = "DETECTOR_UNAVAILABLE"
    status_code = 502


class DetectorResponseMalformedError(LabFeedbackError):
    """Raised when the detector returns a body we cannot interpret."""

    code = "DETECTOR_RESPONSE_MALFORMED"
    status_code = 502


class DownloadFailureError(LabFeedbackError):
    """Raised when the annotated image cannot be fetched or written."""

    code = "DOWNLOAD_FAILED"
    status_code = 502


class PersistenceFailureError(LabFeedbackError):
    """Raised when the backing store rejects or drops a write."""

    code = "PERSISTENCE_FAILED"
    status_code = 500


class AuthenticationFailedError(LabFeedbackError):
    """Raised when a bearer credential is missing, invalid or unknown."""

    code = "UNAUTHENTICATED"
    status_code = 401
