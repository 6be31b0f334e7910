"""DynamoDB-backed FaceRecord store.

Attribute names match the FaceMetadata table layout the gallery already reads
(FaceId, GroupId, ImageKey, Name, CollectionId, Timestamp).
"""

import logging
import time
from typing import Any

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from facegroup.faces.errors import DuplicateRecord, FaceNotFound, PersistenceFailed
from facegroup.faces.records import FaceRecord, check_scan_filters
from facegroup.faces.store import UPDATABLE_FIELDS

logger = logging.getLogger(__name__)

_ATTRS = {
    "face_id": "FaceId",
    "group_id": "GroupId",
    "image_ref": "ImageKey",
    "collection_id": "CollectionId",
    "display_name": "Name",
    "created_at": "Timestamp",
}

_CONDITIONAL_FAILED = "ConditionalCheckFailedException"


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


class DynamoFaceStore:
    """FaceRecord store over a DynamoDB table keyed by FaceId.

    DynamoDB has no unique secondary index, so the image_ref uniqueness write
    needs a second table keyed by ImageKey (``claims_table_name``). Without it
    two concurrent invocations for the same image can both pass the
    idempotency check and both persist.

    A claim older than ``claim_grace_s`` whose FaceId has no record is stale
    (crash between claim and put, or a failed release) and is taken over.
    """

    def __init__(  # noqa: PLR0913
        self,
        table_name: str,
        region: str = "us-east-1",
        claims_table_name: str = "",
        claim_grace_s: float = 300.0,
        timeout: float = 5.0,
        table: Any = None,
        claims_table: Any = None,
    ):
        self.table_name = table_name
        self.claim_grace_s = claim_grace_s
        if table is None or (claims_table_name and claims_table is None):
            resource = boto3.resource(
                "dynamodb",
                region_name=region,
                config=Config(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 3}),
            )
            table = table if table is not None else resource.Table(table_name)
            if claims_table_name and claims_table is None:
                claims_table = resource.Table(claims_table_name)
        self._table = table
        self._claims = claims_table
        if self._claims is None:
            logger.warning(
                "DynamoFaceStore: no claims table configured, concurrent ingestion of one image may duplicate"
            )

    def initialize(self) -> None:
        """Verify the table is reachable. Table creation is left to infrastructure."""
        try:
            self._table.load()
        except (ClientError, BotoCoreError) as e:
            raise PersistenceFailed(f"DynamoDB table {self.table_name} unavailable: {e}") from e

    def get(self, face_id: str) -> FaceRecord | None:
        try:
            resp = self._table.get_item(Key={"FaceId": face_id})
        except (ClientError, BotoCoreError) as e:
            raise PersistenceFailed(f"get {face_id} failed: {e}") from e
        item = resp.get("Item")
        return _item_to_record(item) if item else None

    def put(self, record: FaceRecord) -> None:
        if self._claims is not None:
            self._claim_image(record)
        item = {_ATTRS[k]: v for k, v in record.to_dict().items() if v is not None}
        try:
            self._table.put_item(Item=item, ConditionExpression=Attr("FaceId").not_exists())
        except ClientError as e:
            self._release_claim(record)
            if _error_code(e) == _CONDITIONAL_FAILED:
                raise DuplicateRecord(f"FaceId {record.face_id} already stored") from e
            raise PersistenceFailed(f"put {record.face_id} failed: {e}") from e
        except BotoCoreError as e:
            self._release_claim(record)
            raise PersistenceFailed(f"put {record.face_id} failed: {e}") from e

    def _claim_image(self, record: FaceRecord) -> None:
        """Claim record.image_ref, taking over a stale claim whose FaceRecord never landed."""
        item = {"ImageKey": record.image_ref, "FaceId": record.face_id, "ClaimedAt": int(time.time())}
        try:
            self._claims.put_item(Item=item, ConditionExpression=Attr("ImageKey").not_exists())
            return
        except ClientError as e:
            if _error_code(e) != _CONDITIONAL_FAILED:
                raise PersistenceFailed(f"claim {record.image_ref} failed: {e}") from e
        except BotoCoreError as e:
            raise PersistenceFailed(f"claim {record.image_ref} failed: {e}") from e

        stale_face_id = self._stale_claim(record.image_ref)
        if stale_face_id is None:
            raise DuplicateRecord(f"{record.image_ref} already claimed")
        logger.warning("Reclaiming stale claim on %s (face %s has no record)", record.image_ref, stale_face_id)
        try:
            self._claims.put_item(Item=item, ConditionExpression=Attr("FaceId").eq(stale_face_id))
        except ClientError as e:
            if _error_code(e) == _CONDITIONAL_FAILED:
                raise DuplicateRecord(f"{record.image_ref} already claimed") from e
            raise PersistenceFailed(f"claim {record.image_ref} failed: {e}") from e
        except BotoCoreError as e:
            raise PersistenceFailed(f"claim {record.image_ref} failed: {e}") from e

    def _stale_claim(self, image_ref: str) -> str | None:
        """Return the FaceId of an existing claim that is past the grace period with no record behind it."""
        try:
            claim = self._claims.get_item(Key={"ImageKey": image_ref}).get("Item")
        except (ClientError, BotoCoreError) as e:
            raise PersistenceFailed(f"claim lookup {image_ref} failed: {e}") from e
        if not claim or not claim.get("FaceId"):
            return None
        # An in-flight claim may not have its record yet
        if time.time() - float(claim.get("ClaimedAt", 0)) < self.claim_grace_s:
            return None
        face_id = claim["FaceId"]
        if self.get(face_id) is not None:
            return None
        return face_id

    def _release_claim(self, record: FaceRecord) -> None:
        """Drop the image claim after a failed put so a redelivery can retry."""
        if self._claims is None:
            return
        try:
            self._claims.delete_item(
                Key={"ImageKey": record.image_ref},
                ConditionExpression=Attr("FaceId").eq(record.face_id),
            )
        except (ClientError, BotoCoreError):
            logger.warning("Failed to release image claim for %s", record.image_ref, exc_info=True)

    def scan(self, **filters: str) -> list[FaceRecord]:
        """Full-table scan with an equality FilterExpression, following LastEvaluatedKey."""
        check_scan_filters(filters)
        kwargs: dict[str, Any] = {}
        condition = None
        for key in sorted(filters):
            clause = Attr(_ATTRS[key]).eq(filters[key])
            condition = clause if condition is None else condition & clause
        if condition is not None:
            kwargs["FilterExpression"] = condition

        items: list[dict] = []
        try:
            while True:
                resp = self._table.scan(**kwargs)
                items.extend(resp.get("Items", []))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except (ClientError, BotoCoreError) as e:
            raise PersistenceFailed(f"scan failed: {e}") from e
        records = [_item_to_record(i) for i in items]
        return sorted(records, key=lambda r: (r.created_at, r.face_id))

    def update(self, face_id: str, **changes: Any) -> None:
        bad = set(changes) - UPDATABLE_FIELDS
        if bad or not changes:
            raise ValueError(f"Only {sorted(UPDATABLE_FIELDS)} may be updated, got {sorted(changes)}")
        names = {f"#f{i}": _ATTRS[k] for i, k in enumerate(sorted(changes))}
        values = {f":v{i}": changes[k] for i, k in enumerate(sorted(changes))}
        expression = "SET " + ", ".join(f"#f{i} = :v{i}" for i in range(len(changes)))
        try:
            self._table.update_item(
                Key={"FaceId": face_id},
                UpdateExpression=expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ConditionExpression=Attr("FaceId").exists(),
            )
        except ClientError as e:
            if _error_code(e) == _CONDITIONAL_FAILED:
                raise FaceNotFound(face_id) from e
            raise PersistenceFailed(f"update {face_id} failed: {e}") from e
        except BotoCoreError as e:
            raise PersistenceFailed(f"update {face_id} failed: {e}") from e

    def find_by_image(self, image_ref: str) -> FaceRecord | None:
        if self._claims is not None:
            try:
                claim = self._claims.get_item(Key={"ImageKey": image_ref}).get("Item")
            except (ClientError, BotoCoreError) as e:
                raise PersistenceFailed(f"claim lookup {image_ref} failed: {e}") from e
            return self.get(claim["FaceId"]) if claim else None
        matches = self.scan(image_ref=image_ref)
        return matches[0] if matches else None


def _item_to_record(item: dict[str, Any]) -> FaceRecord:
    fields = {attr: item.get(name) for attr, name in _ATTRS.items()}
    fields["collection_id"] = fields["collection_id"] or ""
    fields["created_at"] = fields["created_at"] or ""
    return FaceRecord(**fields)
