"""Error taxonomy for the capture pipeline."""

from __future__ import annotations

from typing import Optional


class CaptureError(Exception):
    """Base exception for capture pipeline errors.

    ``user_facing`` marks conditions a UI should show to the user; the
    remaining ones are only logged.
    """

    user_facing = True

    def __init__(self, message: str, kind: Optional[str] = None):
        self.kind = kind
        super().__init__(message)


class PermissionDenied(CaptureError):
    """The user declined the capture permission prompt."""


class UserCancelled(CaptureError):
    """The user dismissed the source picker without choosing a source."""


class UnsupportedEnvironment(CaptureError):
    """The runtime cannot capture at all (no display, no adb, ...)."""


class CaptureNotReady(CaptureError):
    """Capture was requested without an active preview."""


class TransientFrameUnavailable(CaptureError):
    """A single tick could not obtain a usable frame."""

    user_facing = False


class CompressionShortfall(CaptureError):
    """The byte budget could not be reached within the attempt budget."""

    user_facing = False


class PersistenceFailure(CaptureError):
    """The persistence callback failed for one screenshot."""

    user_facing = False


class AnalysisFailure(CaptureError):
    """The vision model could not describe a screenshot."""

    def __init__(self, message: str, screenshot_id: Optional[int] = None):
        self.screenshot_id = screenshot_id
        super().__init__(message)


class DeviceRevokedExternally(CaptureError):
    """The capture source was ended outside the controller's stop path."""
