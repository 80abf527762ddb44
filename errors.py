class StudyTrackerError(Exception):
    """Base class for errors raised by the study tracker."""
    status_code = 500


class ValidationFailed(StudyTrackerError):
    """Raised when a create or update request is missing or has invalid fields."""
    status_code = 400


class NotFoundError(StudyTrackerError):
    """Raised when a task or note does not exist for the requesting user."""
    status_code = 404


class TimerLocked(StudyTrackerError):
    """Raised when the timer configuration is changed while the timer runs."""
    status_code = 409


class BackendUnavailable(StudyTrackerError):
    """Raised by a storage backend on a transport or connectivity failure."""
    status_code = 503


class StorageExhausted(StudyTrackerError):
    """Raised when both the remote and the local backend failed."""
    status_code = 503
