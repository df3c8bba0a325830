"""Exception types shared across Stream Guard."""

from __future__ import annotations


class StreamGuardError(Exception):
    pass


class InvalidFrameSize(StreamGuardError, ValueError):
    """Raised when a frame buffer is not exactly 9x8 gray bytes."""

    def __init__(self, got: int, expected: int = 72):
        super().__init__(f"Expected {expected} bytes (9x8 gray), got {got}")
        self.got = got
        self.expected = expected


class ReferenceLoadError(StreamGuardError):
    """The stop frame image could not be turned into a fingerprint."""


class ControllerError(StreamGuardError):
    """A call to the streaming controller (OBS) failed."""


class ProfileSwitchError(ControllerError):
    pass


class ScheduleStoreError(StreamGuardError):
    pass
