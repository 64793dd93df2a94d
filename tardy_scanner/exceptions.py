class TrackerError(Exception):
    """Base exception for the tardy scanner."""


class ResourceUnavailable(TrackerError):
    """Raised when the camera or the face models cannot be brought up."""


class CameraError(ResourceUnavailable):
    """Raised when webcam access fails."""


class ModelLoadError(ResourceUnavailable):
    """Raised when face detection/recognition models fail to load."""


class DetectionTransientFailure(TrackerError):
    """Raised when a single detection call fails."""


class InvalidInput(TrackerError):
    """Raised when operator-submitted values are rejected before any write."""


class NoActiveSubject(TrackerError):
    """Raised when an incident action is attempted without an identified student."""


class SubmissionInProgress(TrackerError):
    """Raised when an incident is submitted while a previous write is outstanding."""


class StoreError(TrackerError):
    """Raised when the collection store rejects an operation."""


class WriteFailure(TrackerError):
    """Raised when an incident write is rejected by the store."""


class SubscriptionFailure(TrackerError):
    """Raised when a live collection feed stops delivering updates."""


class FaceNotDetected(TrackerError):
    """Raised when an enrollment scan finds no face."""


class ExportError(TrackerError):
    """Raised when an export has nothing to write."""


class AuthError(TrackerError):
    """Raised when sign-in fails."""


class NotAuthenticated(AuthError):
    """Raised when an action requires a signed-in operator."""


class PermissionDenied(AuthError):
    """Raised when the operator's role does not allow an action."""
