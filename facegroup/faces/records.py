"""FaceRecord: one persisted row per detected face, plus the store protocol."""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

# snake_case attribute -> camelCase wire key (HTTP responses, CLI output)
_WIRE_KEYS = {
    "face_id": "faceId",
    "group_id": "groupId",
    "image_ref": "imageRef",
    "display_name": "displayName",
    "created_at": "createdAt",
    "collection_id": "collectionId",
}

SCAN_FIELDS = frozenset({"group_id", "image_ref", "collection_id"})


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class FaceRecord:
    """One detected face. Only display_name changes after creation, via rename."""

    face_id: str
    group_id: str
    image_ref: str
    collection_id: str = ""
    display_name: str | None = None
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_api(self) -> dict[str, Any]:
        return {_WIRE_KEYS[k]: v for k, v in asdict(self).items()}


class FaceStore(Protocol):
    """Metadata store capability: keyed records with scan and per-record update.

    ``put`` raises DuplicateRecord when a conditional write is rejected and
    PersistenceFailed for any other store error. ``update`` raises
    FaceNotFound when the key is absent.
    """

    def get(self, face_id: str) -> FaceRecord | None: ...

    def put(self, record: FaceRecord) -> None: ...

    def scan(self, **filters: str) -> list[FaceRecord]: ...

    def update(self, face_id: str, **changes: Any) -> None: ...

    def find_by_image(self, image_ref: str) -> FaceRecord | None: ...


def check_scan_filters(filters: dict[str, Any]) -> None:
    unknown = set(filters) - SCAN_FIELDS
    if unknown:
        raise ValueError(f"Unsupported scan filter(s): {', '.join(sorted(unknown))}")
