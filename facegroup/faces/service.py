"""Query and rename service over stored FaceRecords."""

import logging
from dataclasses import dataclass

from facegroup.faces.errors import FaceGroupError, FaceNotFound, InvalidName, PartialRenamePropagation
from facegroup.faces.records import FaceRecord, FaceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenameResult:
    group_id: str
    name: str
    updated: list[str]


class FaceQueryService:
    """Read API plus group-wide rename."""

    def __init__(self, store: FaceStore):
        self.store = store

    def list_faces(self, collection_id: str | None = None) -> list[FaceRecord]:
        if collection_id:
            return self.store.scan(collection_id=collection_id)
        return self.store.scan()

    def get_face(self, face_id: str) -> FaceRecord:
        record = self.store.get(face_id)
        if record is None:
            raise FaceNotFound(face_id)
        return record

    def list_group(self, group_id: str) -> list[FaceRecord]:
        return self.store.scan(group_id=group_id)

    def rename_face(self, face_id: str, name: str) -> RenameResult:
        """Set display_name on every face sharing face_id's group.

        Scatter-update: each member is written independently and nothing is
        rolled back. If any member write fails, raises
        PartialRenamePropagation listing both sides. Concurrent renames of the
        same group resolve last-write-wins per record.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidName("name must be a non-empty string")

        group_id = self.get_face(face_id).group_id
        members = self.list_group(group_id)

        updated: list[str] = []
        failed: list[str] = []
        for member in members:
            try:
                self.store.update(member.face_id, display_name=name)
                updated.append(member.face_id)
            except FaceGroupError as e:
                logger.error("Rename: failed to update face %s in group %s: %s", member.face_id, group_id, e)
                failed.append(member.face_id)

        if failed:
            raise PartialRenamePropagation(group_id, updated=updated, failed=failed)

        logger.info("Updated %d faces in group %s to %r", len(updated), group_id, name)
        return RenameResult(group_id=group_id, name=name, updated=updated)
