"""Ingestion pipeline: SNS notification → filter → dedup → detect → group → persist."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import aiohttp

from facegroup.faces.envelope import (
    NOTIFICATION,
    SUBSCRIPTION_CONFIRMATION,
    RecordFilter,
    decode_payload,
    extract_records,
)
from facegroup.faces.errors import (
    DetectionFailed,
    DuplicateRecord,
    NoFaceDetected,
    PersistenceFailed,
    SubscriptionConfirmationFailed,
    UnsupportedEvent,
)
from facegroup.faces.grouping import DEFAULT_SIMILARITY_THRESHOLD, GroupingEngine
from facegroup.faces.matcher import FaceMatcher
from facegroup.faces.records import FaceRecord, FaceStore, utc_now

logger = logging.getLogger(__name__)

# Rekognition error codes that point at the uploaded object rather than the service
_OBJECT_ERROR_MESSAGES = {
    "InvalidImageFormatException": "Invalid image format for %s",
    "InvalidS3ObjectException": "Invalid S3 object for %s: check key, region, or permissions",
}


@dataclass
class RecordOutcome:
    key: str
    action: str  # created | skipped | failed
    reason: str = ""
    detail: str = ""
    record: FaceRecord | None = None


@dataclass
class IngestResult:
    status: str  # confirmed | processed | ignored
    outcomes: list[RecordOutcome] = field(default_factory=list)

    @property
    def created(self) -> list[FaceRecord]:
        return [o.record for o in self.outcomes if o.action == "created" and o.record is not None]

    @property
    def skipped(self) -> list[tuple[str, str]]:
        return [(o.key, o.reason) for o in self.outcomes if o.action == "skipped"]

    @property
    def failed(self) -> list[tuple[str, str]]:
        return [(o.key, o.reason) for o in self.outcomes if o.action == "failed"]

    def summary(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "created": [r.face_id for r in self.created],
            "skipped": [{"key": k, "reason": r} for k, r in self.skipped],
            "failed": [{"key": k, "reason": r} for k, r in self.failed],
        }


def _raw_key(record: Any) -> str:
    try:
        return str(record["s3"]["object"]["key"])
    except (KeyError, TypeError):
        return "<unknown>"


class IngestionPipeline:
    """Handle one SNS delivery per call. Calls are independent and may run concurrently.

    Records inside one delivery are processed sequentially. A record-level
    failure is logged and recorded in the result; it never aborts siblings
    and never turns the delivery into a transport-visible error, because a
    redelivery would replay the whole batch. Deduplication is this class's
    job, via the store, not the transport's.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: FaceStore,
        matcher: FaceMatcher,
        config: dict[str, Any],
        session: aiohttp.ClientSession | None = None,
        grouping: GroupingEngine | None = None,
    ):
        self.store = store
        self.matcher = matcher
        self.collection_id = config.get("faces.collection_id", "")
        self.filter = RecordFilter(config)
        self.grouping = grouping or GroupingEngine(
            matcher,
            store,
            threshold=float(config.get("faces.similarity_threshold", DEFAULT_SIMILARITY_THRESHOLD)),
        )
        self.confirm_host_suffix = config.get("ingest.confirm_host_suffix", ".amazonaws.com")
        self.confirm_timeout_s = float(config.get("ingest.confirm_timeout_s", 10))
        self._session = session

        # Exposed on /health
        self.last_processed_at: str | None = None
        self.error_count = 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, raw: str | bytes | dict) -> IngestResult:
        """Process one raw delivery. Raises MalformedPayload / SubscriptionConfirmationFailed."""
        payload = decode_payload(raw)
        msg_type = payload.get("Type")

        if msg_type == SUBSCRIPTION_CONFIRMATION:
            await self.confirm_subscription(payload)
            return IngestResult(status="confirmed")

        if msg_type not in (NOTIFICATION, None):
            logger.info("Ignoring SNS message of type %r", msg_type)
            return IngestResult(status="ignored")

        records = extract_records(payload)
        result = IngestResult(status="processed")
        for record in records:
            try:
                outcome = await asyncio.to_thread(self.process_record, record)
            except Exception as e:
                logger.exception("Unexpected error processing %s", _raw_key(record))
                outcome = RecordOutcome(_raw_key(record), "failed", reason="internal_error", detail=str(e))
            if outcome.action == "failed":
                self.error_count += 1
            result.outcomes.append(outcome)

        self.last_processed_at = utc_now()
        logger.info(
            "Notification processed: %d records, %d created, %d skipped, %d failed",
            len(records),
            len(result.created),
            len(result.skipped),
            len(result.failed),
        )
        return result

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def confirm_subscription(self, payload: dict[str, Any]) -> None:
        """GET the SubscribeURL once. Raises SubscriptionConfirmationFailed on any failure."""
        url = payload.get("SubscribeURL")
        if not url or not isinstance(url, str):
            raise SubscriptionConfirmationFailed("SubscriptionConfirmation has no SubscribeURL")

        parsed = urlparse(url)
        host = parsed.hostname or ""
        if parsed.scheme != "https" or (self.confirm_host_suffix and not host.endswith(self.confirm_host_suffix)):
            raise SubscriptionConfirmationFailed(f"Refusing to confirm untrusted SubscribeURL host {host!r}")

        logger.info("Confirming SNS subscription for topic %s", payload.get("TopicArn", "?"))
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.confirm_timeout_s)) as resp:
                if resp.status >= 300:
                    raise SubscriptionConfirmationFailed(f"SubscribeURL returned HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SubscriptionConfirmationFailed(f"SubscribeURL fetch failed: {e}") from e
        finally:
            if session is not self._session and not session.closed:
                await session.close()
        logger.info("SNS subscription confirmed")

    # ------------------------------------------------------------------
    # Per-record work (blocking, run via asyncio.to_thread)
    # ------------------------------------------------------------------

    def process_record(self, record: Any) -> RecordOutcome:
        key = _raw_key(record)
        try:
            face = self._ingest(record)
        except UnsupportedEvent as e:
            logger.info("Skipping record %s: %s", key, e)
            return RecordOutcome(key, "skipped", reason="unsupported", detail=str(e))
        except NoFaceDetected as e:
            logger.info("No faces detected in %s", key)
            return RecordOutcome(key, "skipped", reason="no_face", detail=str(e))
        except DuplicateRecord as e:
            logger.info("Skipping %s: already processed (%s)", key, e)
            return RecordOutcome(key, "skipped", reason="duplicate", detail=str(e))
        except DetectionFailed as e:
            logger.error("Error processing %s: %s", key, e)
            if e.code in _OBJECT_ERROR_MESSAGES:
                logger.error(_OBJECT_ERROR_MESSAGES[e.code], key)
            return RecordOutcome(key, "failed", reason="detection_failed", detail=str(e))
        except PersistenceFailed as e:
            logger.error("Error persisting %s: %s", key, e)
            return RecordOutcome(key, "failed", reason="persistence_failed", detail=str(e))
        return RecordOutcome(face.image_ref, "created", record=face)

    def _ingest(self, record: Any) -> FaceRecord:
        upload = self.filter.check(record)
        key = upload.key

        existing = self.store.find_by_image(key)
        if existing is not None:
            raise DuplicateRecord(f"{key} already produced face {existing.face_id}")

        logger.info("New image uploaded: %s in bucket %s", key, upload.bucket)
        face_id = self.matcher.detect(key)
        if face_id is None:
            raise NoFaceDetected(key)

        decision = self.grouping.assign(face_id)
        face = FaceRecord(
            face_id=face_id,
            group_id=decision.group_id,
            image_ref=key,
            collection_id=self.collection_id,
        )
        # Conditional write: a concurrent invocation that won the race surfaces as DuplicateRecord
        self.store.put(face)
        logger.info("Face %s saved (group %s, image %s)", face_id, decision.group_id, key)
        return face
