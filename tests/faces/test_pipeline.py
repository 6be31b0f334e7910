"""Tests for IngestionPipeline: handshake, decode, dedup, detect, group, persist."""

import json
import time
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from botocore.exceptions import ClientError

from facegroup.faces.dynamo_store import DynamoFaceStore
from facegroup.faces.errors import DetectionFailed, MalformedPayload, PersistenceFailed, SubscriptionConfirmationFailed
from facegroup.faces.matcher import FaceMatch
from facegroup.faces.pipeline import IngestionPipeline
from facegroup.faces.records import FaceRecord
from facegroup.faces.store import SQLiteFaceStore
from facegroup.hub.config_defaults import load_config

CONFIG = load_config(env={}, overrides={"ingest.bucket": "photos", "faces.collection_id": "face-collection"})


def s3_record(key, bucket="photos", source="aws:s3"):
    return {"eventSource": source, "s3": {"bucket": {"name": bucket}, "object": {"key": key}}}


def notification(*records):
    return json.dumps({"Type": "Notification", "Message": json.dumps({"Records": list(records)})})


def make_matcher(faces=None, similar=None):
    """Matcher mock: faces maps key -> face id, similar maps face id -> [FaceMatch]."""
    faces = faces or {}
    similar = similar or {}
    matcher = MagicMock()
    matcher.detect.side_effect = lambda key: faces.get(key)
    matcher.find_similar.side_effect = lambda face_id, threshold: similar.get(face_id, [])
    return matcher


def make_response(status=200):
    resp = AsyncMock()
    resp.status = status
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


@pytest.fixture
def store(tmp_path):
    s = SQLiteFaceStore(str(tmp_path / "faces.db"))
    s.initialize()
    return s


class TestScenarios:
    @pytest.mark.asyncio
    async def test_no_face_creates_nothing(self, store):
        matcher = make_matcher()
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        result = await pipeline.handle(notification(s3_record("face/alice.jpg")))
        assert result.status == "processed"
        assert result.created == []
        assert result.skipped == [("face/alice.jpg", "no_face")]
        assert store.scan() == []

    @pytest.mark.asyncio
    async def test_new_face_starts_own_group(self, store):
        pipeline = IngestionPipeline(store, make_matcher(faces={"face/bob.jpg": "F1"}), CONFIG)
        await pipeline.handle(notification(s3_record("face/bob.jpg")))
        rec = store.get("F1")
        assert (rec.face_id, rec.group_id, rec.image_ref) == ("F1", "F1", "face/bob.jpg")
        assert rec.collection_id == "face-collection"
        assert rec.display_name is None

    @pytest.mark.asyncio
    async def test_similar_face_joins_group(self, store):
        matcher = make_matcher(
            faces={"face/bob.jpg": "F1", "face/bob2.jpg": "F2"},
            similar={"F2": [FaceMatch("F1", 92.0)]},
        )
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        await pipeline.handle(notification(s3_record("face/bob.jpg")))
        await pipeline.handle(notification(s3_record("face/bob2.jpg")))
        rec = store.get("F2")
        assert (rec.face_id, rec.group_id, rec.image_ref) == ("F2", "F1", "face/bob2.jpg")
        matcher.find_similar.assert_any_call("F2", 85.0)


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_replay_creates_nothing(self, store):
        matcher = make_matcher(faces={"face/bob.jpg": "F1"})
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        body = notification(s3_record("face/bob.jpg"))
        await pipeline.handle(body)
        result = await pipeline.handle(body)
        assert result.created == []
        assert result.skipped == [("face/bob.jpg", "duplicate")]
        assert len(store.scan()) == 1
        assert matcher.detect.call_count == 1  # replay never reaches the matcher

    @pytest.mark.asyncio
    async def test_lost_race_is_duplicate_not_failure(self, store):
        """Another invocation persisted the image between our check and our write."""
        store.put(FaceRecord("F0", "F0", "face/bob.jpg"))
        racing_store = MagicMock(wraps=store)
        racing_store.find_by_image.return_value = None  # check passed before the other write landed
        pipeline = IngestionPipeline(racing_store, make_matcher(faces={"face/bob.jpg": "F1"}), CONFIG)
        result = await pipeline.handle(notification(s3_record("face/bob.jpg")))
        assert result.skipped == [("face/bob.jpg", "duplicate")]
        assert result.failed == []
        assert [r.face_id for r in store.scan()] == ["F0"]

    @pytest.mark.asyncio
    async def test_same_image_twice_in_one_batch(self, store):
        pipeline = IngestionPipeline(store, make_matcher(faces={"face/bob.jpg": "F1"}), CONFIG)
        result = await pipeline.handle(notification(s3_record("face/bob.jpg"), s3_record("face/bob.jpg")))
        assert len(result.created) == 1
        assert result.skipped == [("face/bob.jpg", "duplicate")]

    @pytest.mark.asyncio
    async def test_stale_dynamo_claim_does_not_block_redelivery(self):
        """A claim left behind by a crashed invocation is taken over instead of reported as duplicate."""
        table, claims = MagicMock(), MagicMock()
        table.get_item.return_value = {}
        claims.get_item.return_value = {
            "Item": {"ImageKey": "face/bob.jpg", "FaceId": "OLD", "ClaimedAt": int(time.time()) - 3600}
        }
        conditional_failed = ClientError({"Error": {"Code": "ConditionalCheckFailedException"}}, "PutItem")
        claims.put_item.side_effect = [conditional_failed, {}]
        dynamo = DynamoFaceStore("FaceMetadata", table=table, claims_table=claims)
        matcher = make_matcher(faces={"face/bob.jpg": "F1"})
        pipeline = IngestionPipeline(dynamo, matcher, CONFIG)

        result = await pipeline.handle(notification(s3_record("face/bob.jpg")))

        assert [r.face_id for r in result.created] == ["F1"]
        assert result.skipped == []
        assert matcher.detect.call_count == 1
        assert table.put_item.call_args.kwargs["Item"]["FaceId"] == "F1"


class TestFiltering:
    @pytest.mark.asyncio
    async def test_filtered_records_never_reach_matcher(self, store):
        matcher = make_matcher(faces={"face/bob.jpg": "F1"})
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        result = await pipeline.handle(
            notification(
                s3_record("uploads/bob.jpg"),
                s3_record("face/bob.png"),
                s3_record("face/bob_temp.jpg"),
                s3_record("face/bob.jpg", bucket="other"),
                s3_record("face/bob.jpg", source="aws:sqs"),
            )
        )
        assert [reason for _, reason in result.skipped] == ["unsupported"] * 5
        matcher.detect.assert_not_called()
        assert store.scan() == []

    @pytest.mark.asyncio
    async def test_malformed_s3_record_is_skipped_not_failed(self, store):
        matcher = make_matcher(faces={"face/bob.jpg": "F1"})
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        result = await pipeline.handle(
            notification({"eventSource": "aws:s3", "s3": "garbage"}, s3_record("face/bob.jpg"))
        )
        assert [reason for _, reason in result.skipped] == ["unsupported"]
        assert result.failed == []
        assert pipeline.error_count == 0
        assert [r.face_id for r in store.scan()] == ["F1"]


class TestPartialFailure:
    @pytest.mark.asyncio
    async def test_detection_failure_does_not_abort_siblings(self, store):
        matcher = make_matcher(faces={"face/b.jpg": "F2"})

        def detect(key):
            if key == "face/a.jpg":
                raise DetectionFailed("boom", code="InvalidImageFormatException")
            return {"face/b.jpg": "F2"}.get(key)

        matcher.detect.side_effect = detect
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        result = await pipeline.handle(notification(s3_record("face/a.jpg"), s3_record("face/b.jpg")))
        assert result.failed == [("face/a.jpg", "detection_failed")]
        assert [r.face_id for r in result.created] == ["F2"]
        assert pipeline.error_count == 1
        assert pipeline.last_processed_at is not None

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_abort_siblings(self, store):
        failing_store = MagicMock(wraps=store)
        calls = {"n": 0}

        def put(record):
            calls["n"] += 1
            if calls["n"] == 1:
                raise PersistenceFailed("disk full")
            store.put(record)

        failing_store.put.side_effect = put
        matcher = make_matcher(faces={"face/a.jpg": "F1", "face/b.jpg": "F2"})
        pipeline = IngestionPipeline(failing_store, matcher, CONFIG)
        result = await pipeline.handle(notification(s3_record("face/a.jpg"), s3_record("face/b.jpg")))
        assert result.failed == [("face/a.jpg", "persistence_failed")]
        assert [r.face_id for r in store.scan()] == ["F2"]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, store):
        matcher = make_matcher(faces={"face/b.jpg": "F2"})
        matcher.detect.side_effect = [RuntimeError("bug"), "F2"]
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        result = await pipeline.handle(notification(s3_record("face/a.jpg"), s3_record("face/b.jpg")))
        assert result.failed == [("face/a.jpg", "internal_error")]
        assert store.get("F2") is not None

    @pytest.mark.asyncio
    async def test_search_failure_is_detection_failure(self, store):
        matcher = make_matcher(faces={"face/a.jpg": "F1"})
        matcher.find_similar.side_effect = DetectionFailed("throttled")
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        result = await pipeline.handle(notification(s3_record("face/a.jpg")))
        assert result.failed == [("face/a.jpg", "detection_failed")]
        assert store.scan() == []


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_malformed_payload_raises(self, store):
        matcher = make_matcher()
        pipeline = IngestionPipeline(store, matcher, CONFIG)
        with pytest.raises(MalformedPayload):
            await pipeline.handle("{not json")
        matcher.detect.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_records_raises(self, store):
        pipeline = IngestionPipeline(store, make_matcher(), CONFIG)
        with pytest.raises(MalformedPayload):
            await pipeline.handle(json.dumps({"Type": "Notification", "Message": json.dumps({})}))
        assert store.scan() == []

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, store):
        pipeline = IngestionPipeline(store, make_matcher(), CONFIG)
        result = await pipeline.handle(json.dumps({"Type": "UnsubscribeConfirmation"}))
        assert result.status == "ignored"


class TestHandshake:
    URL = "https://sns.us-east-1.amazonaws.com/?Action=ConfirmSubscription&Token=abc"

    def _confirmation(self, url=None):
        return json.dumps({"Type": "SubscriptionConfirmation", "SubscribeURL": url or self.URL, "TopicArn": "arn:t"})

    @pytest.mark.asyncio
    async def test_fetches_subscribe_url_once(self, store):
        session = MagicMock()
        session.get = MagicMock(return_value=make_response(200))
        matcher = make_matcher()
        pipeline = IngestionPipeline(store, matcher, CONFIG, session=session)
        result = await pipeline.handle(self._confirmation())
        assert result.status == "confirmed"
        session.get.assert_called_once()
        assert session.get.call_args.args[0] == self.URL
        matcher.detect.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error_fails(self, store):
        session = MagicMock()
        session.get = MagicMock(return_value=make_response(403))
        pipeline = IngestionPipeline(store, make_matcher(), CONFIG, session=session)
        with pytest.raises(SubscriptionConfirmationFailed):
            await pipeline.handle(self._confirmation())

    @pytest.mark.asyncio
    async def test_network_error_fails(self, store):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientError("Connection refused"))
        pipeline = IngestionPipeline(store, make_matcher(), CONFIG, session=session)
        with pytest.raises(SubscriptionConfirmationFailed):
            await pipeline.handle(self._confirmation())

    @pytest.mark.asyncio
    async def test_untrusted_host_refused(self, store):
        session = MagicMock()
        pipeline = IngestionPipeline(store, make_matcher(), CONFIG, session=session)
        with pytest.raises(SubscriptionConfirmationFailed):
            await pipeline.handle(self._confirmation("https://evil.example.com/confirm"))
        session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_url_fails(self, store):
        pipeline = IngestionPipeline(store, make_matcher(), CONFIG, session=MagicMock())
        with pytest.raises(SubscriptionConfirmationFailed):
            await pipeline.handle(json.dumps({"Type": "SubscriptionConfirmation"}))
