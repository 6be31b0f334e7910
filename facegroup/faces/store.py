"""Face metadata store: SQLite CRUD for FaceRecords."""

import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any

from facegroup.faces.errors import DuplicateRecord, FaceNotFound, PersistenceFailed
from facegroup.faces.records import FaceRecord, check_scan_filters

logger = logging.getLogger(__name__)

# Only display_name changes after creation; everything else is write-once.
UPDATABLE_FIELDS = frozenset({"display_name"})

_COLUMNS = ("face_id", "group_id", "image_ref", "collection_id", "display_name", "created_at")


class SQLiteFaceStore:
    """SQLite-backed FaceRecord store.

    The unique index on image_ref is the conditional write that closes the
    check-then-act race between two invocations ingesting the same image.
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self.timeout)

    def initialize(self) -> None:
        """Create tables if they don't exist. Idempotent."""
        with closing(self._connect()) as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS face_records (
                    face_id        TEXT PRIMARY KEY,
                    group_id       TEXT NOT NULL,
                    image_ref      TEXT NOT NULL,
                    collection_id  TEXT NOT NULL DEFAULT '',
                    display_name   TEXT,
                    created_at     TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_face_records_image
                    ON face_records(image_ref);
                CREATE INDEX IF NOT EXISTS idx_face_records_group
                    ON face_records(group_id);
            """)
            conn.commit()

    def get(self, face_id: str) -> FaceRecord | None:
        try:
            with closing(self._connect()) as conn:
                conn.row_factory = sqlite3.Row
                row = conn.execute("SELECT * FROM face_records WHERE face_id = ?", (face_id,)).fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailed(f"get {face_id} failed: {e}") from e
        return _row_to_record(row) if row else None

    def put(self, record: FaceRecord) -> None:
        try:
            with closing(self._connect()) as conn:
                conn.execute(
                    f"INSERT INTO face_records ({', '.join(_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?)",
                    tuple(getattr(record, c) for c in _COLUMNS),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateRecord(f"{record.face_id} / {record.image_ref} already stored") from e
        except sqlite3.Error as e:
            raise PersistenceFailed(f"put {record.face_id} failed: {e}") from e

    def scan(self, **filters: str) -> list[FaceRecord]:
        """Return records matching every equality filter, oldest first."""
        check_scan_filters(filters)
        sql = "SELECT * FROM face_records"
        if filters:
            sql += " WHERE " + " AND ".join(f"{k} = ?" for k in sorted(filters))
        sql += " ORDER BY created_at, face_id"
        try:
            with closing(self._connect()) as conn:
                conn.row_factory = sqlite3.Row
                rows = conn.execute(sql, tuple(filters[k] for k in sorted(filters))).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailed(f"scan failed: {e}") from e
        return [_row_to_record(r) for r in rows]

    def update(self, face_id: str, **changes: Any) -> None:
        bad = set(changes) - UPDATABLE_FIELDS
        if bad or not changes:
            raise ValueError(f"Only {sorted(UPDATABLE_FIELDS)} may be updated, got {sorted(changes)}")
        assignments = ", ".join(f"{k} = ?" for k in sorted(changes))
        try:
            with closing(self._connect()) as conn:
                cur = conn.execute(
                    f"UPDATE face_records SET {assignments} WHERE face_id = ?",
                    (*(changes[k] for k in sorted(changes)), face_id),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailed(f"update {face_id} failed: {e}") from e
        if cur.rowcount == 0:
            raise FaceNotFound(face_id)

    def find_by_image(self, image_ref: str) -> FaceRecord | None:
        matches = self.scan(image_ref=image_ref)
        return matches[0] if matches else None


def _row_to_record(row: sqlite3.Row) -> FaceRecord:
    return FaceRecord(**{c: row[c] for c in _COLUMNS})
