"""SNS envelope decoding and S3 change-record filtering."""

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote_plus

from facegroup.faces.errors import MalformedPayload, UnsupportedEvent

logger = logging.getLogger(__name__)

SUBSCRIPTION_CONFIRMATION = "SubscriptionConfirmation"
NOTIFICATION = "Notification"


def decode_payload(raw: str | bytes | dict) -> dict[str, Any]:
    """Parse the raw request body into the outer SNS message dict."""
    if isinstance(raw, dict):
        return raw
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"Body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedPayload(f"Body must be a JSON object, got {type(payload).__name__}")
    return payload


def extract_records(payload: dict[str, Any]) -> list[Any]:
    """Return the change-record list from a Notification envelope.

    Also accepts raw message delivery, where the S3 event arrives unwrapped
    as ``{"Records": [...]}``.
    """
    if "Records" in payload and "Type" not in payload:
        message: Any = payload
    else:
        body = payload.get("Message")
        if body is None:
            raise MalformedPayload("Notification has no Message")
        if isinstance(body, str):
            try:
                message = json.loads(body)
            except ValueError as e:
                raise MalformedPayload(f"Message is not valid JSON: {e}") from e
        else:
            message = body

    records = message.get("Records") if isinstance(message, dict) else None
    if not isinstance(records, list):
        raise MalformedPayload("Message has no Records list")
    return records


@dataclass(frozen=True)
class ImageUpload:
    bucket: str
    key: str


class RecordFilter:
    """Accepts only image uploads under the configured prefix, from the configured source."""

    def __init__(self, config: dict[str, Any]):
        self.event_source = config.get("ingest.event_source", "aws:s3")
        self.bucket = config.get("ingest.bucket", "")
        self.key_prefix = config.get("ingest.key_prefix", "face/")
        self.key_suffix = config.get("ingest.key_suffix", ".jpg")
        self.temp_suffix = config.get("ingest.temp_suffix", "_temp.jpg")

    def check(self, record: Any) -> ImageUpload:
        """Return the upload a record describes, or raise UnsupportedEvent with the reason."""
        if not isinstance(record, dict):
            raise UnsupportedEvent("record is not an object")

        source = record.get("eventSource", record.get("EventSource"))
        if source != self.event_source:
            raise UnsupportedEvent(f"event source {source!r}")

        s3 = record.get("s3") or {}
        if not isinstance(s3, dict):
            raise UnsupportedEvent("malformed s3 record")
        bucket_info = s3.get("bucket") or {}
        object_info = s3.get("object") or {}
        if not isinstance(bucket_info, dict) or not isinstance(object_info, dict):
            raise UnsupportedEvent("malformed s3 record")
        bucket = bucket_info.get("name", "")
        raw_key = object_info.get("key")
        if not raw_key or not isinstance(raw_key, str):
            raise UnsupportedEvent("record has no object key")
        if self.bucket and bucket != self.bucket:
            raise UnsupportedEvent(f"bucket {bucket!r}")

        key = unquote_plus(raw_key)
        if not key.startswith(self.key_prefix):
            raise UnsupportedEvent(f"key {key!r} outside prefix {self.key_prefix!r}")
        if not key.endswith(self.key_suffix):
            raise UnsupportedEvent(f"key {key!r} lacks suffix {self.key_suffix!r}")
        if self.temp_suffix and key.endswith(self.temp_suffix):
            raise UnsupportedEvent(f"key {key!r} is a temp artifact")
        return ImageUpload(bucket=bucket, key=key)
