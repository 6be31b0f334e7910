"""Error taxonomy for the face grouping pipeline.

Invocation-level errors (MalformedPayload, SubscriptionConfirmationFailed) end
the whole request. Record-level errors (UnsupportedEvent, DetectionFailed,
NoFaceDetected, PersistenceFailed, DuplicateRecord) are logged by the pipeline
and never abort sibling records. The rest surface through the query API.
"""


class FaceGroupError(Exception):
    """Base class for every error raised by facegroup."""


# --- Ingestion, invocation level ---


class MalformedPayload(FaceGroupError):
    """Notification envelope could not be decoded. Reported as a client error."""


class SubscriptionConfirmationFailed(FaceGroupError):
    """SubscribeURL fetch failed or returned a non-2xx status."""


# --- Ingestion, record level ---


class UnsupportedEvent(FaceGroupError):
    """Record is not an image upload this pipeline handles. Skipped, not a failure."""


class NoFaceDetected(FaceGroupError):
    """Matcher indexed the image but found no face. Skipped, not a failure."""


class DetectionFailed(FaceGroupError):
    """Matching service call failed for one record."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class PersistenceFailed(FaceGroupError):
    """Store call failed for one record."""


class DuplicateRecord(PersistenceFailed):
    """Conditional write rejected: face id or image ref already stored."""


# --- Query / rename ---


class FaceNotFound(FaceGroupError):
    """No FaceRecord exists for the requested face id."""

    def __init__(self, face_id: str):
        super().__init__(f"FaceId not found: {face_id}")
        self.face_id = face_id


class InvalidName(FaceGroupError, ValueError):
    """Display name is empty after stripping whitespace."""


class PartialRenamePropagation(FaceGroupError):
    """Some group members were renamed before a failure. No rollback is attempted."""

    def __init__(self, group_id: str, updated: list[str], failed: list[str]):
        super().__init__(f"Rename of group {group_id} incomplete: {len(updated)} updated, {len(failed)} failed")
        self.group_id = group_id
        self.updated = updated
        self.failed = failed
