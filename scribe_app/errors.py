"""Exception hierarchy shared across the client and relay."""


class CaptureError(RuntimeError):
    """Audio sources could not be acquired or wired."""


class PermissionDenied(CaptureError):
    """A capture device refused access."""


class NoAudioTrack(CaptureError):
    """The system-audio share carries no audio track."""


class StorageError(RuntimeError):
    """Storage or session API request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(RuntimeError):
    """Socket transport is unavailable or an emit failed."""


class RecorderStateError(RuntimeError):
    """Lifecycle call made in the wrong controller state."""
