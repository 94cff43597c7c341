"""Error taxonomy for the attendance engine.

Only ``PermissionDenied``, ``UnknownEntity``, ``InvalidCapture`` and
``InvalidTransition`` ever reach a caller of the engine. ``OracleUnavailable`` and
``NoEligibleSubject`` are absorbed by the session matcher and turned into a
structured ``ScanResult``. ``DuplicateRecord`` becomes ``ALREADY_PRESENT`` where
a record is committed. ``InvalidSnapshot`` stops a store from being used.
"""


class ClassTrackError(Exception):
    """Base class for every error raised by classtrack."""


class PermissionDenied(ClassTrackError):
    """Re-enrollment attempted on a locked, fully enrolled student."""


class NoEligibleSubject(ClassTrackError):
    """No pending roster member, or the selected one has no references."""


class OracleUnavailable(ClassTrackError):
    """The verification call could not be completed."""


class DuplicateRecord(ClassTrackError):
    """A record for this (class, student) pair is already in the ledger."""

    def __init__(self, class_id: str, student_id: str):
        super().__init__(f"Student {student_id} already has a record for class {class_id}")
        self.class_id = class_id
        self.student_id = student_id


class UnknownEntity(ClassTrackError):
    """A referenced user or class does not exist in the snapshot."""


class InvalidCapture(ClassTrackError):
    """A capture was empty."""


class InvalidTransition(ClassTrackError):
    """An enrollment run was driven from a terminal state."""


class InvalidSnapshot(ClassTrackError):
    """Stored data parsed but does not validate; it must not be overwritten."""


__all__ = [
    "ClassTrackError",
    "PermissionDenied",
    "NoEligibleSubject",
    "OracleUnavailable",
    "DuplicateRecord",
    "UnknownEntity",
    "InvalidCapture",
    "InvalidTransition",
    "InvalidSnapshot",
]
