"""FaceGroupHub: owns the store, matcher, HTTP session and the services built on them."""

import contextlib
import logging
from typing import Any

import aiohttp

from facegroup.faces.matcher import FaceMatcher
from facegroup.faces.pipeline import IngestionPipeline
from facegroup.faces.records import FaceStore
from facegroup.faces.service import FaceQueryService

logger = logging.getLogger(__name__)


def build_store(config: dict[str, Any]) -> FaceStore:
    """Construct the configured store backend (not yet initialized)."""
    backend = config.get("store.backend", "sqlite")
    if backend == "sqlite":
        from facegroup.faces.store import SQLiteFaceStore

        return SQLiteFaceStore(config["store.sqlite_path"])
    if backend == "dynamodb":
        from facegroup.faces.dynamo_store import DynamoFaceStore

        return DynamoFaceStore(
            table_name=config["store.dynamodb_table"],
            region=config["aws.region"],
            claims_table_name=config.get("store.dynamodb_claims_table", ""),
            claim_grace_s=float(config.get("store.claim_grace_s", 300)),
            timeout=float(config["aws.timeout_s"]),
        )
    raise ValueError(f"Unknown store backend: {backend!r}")


def build_matcher(config: dict[str, Any]) -> FaceMatcher:
    from facegroup.faces.matcher import RekognitionFaceMatcher

    if not config.get("ingest.bucket"):
        raise ValueError("ingest.bucket must be set for the Rekognition matcher")
    return RekognitionFaceMatcher(
        bucket=config["ingest.bucket"],
        collection_id=config["faces.collection_id"],
        region=config["aws.region"],
        max_matches=int(config["faces.max_matches"]),
        timeout=float(config["aws.timeout_s"]),
    )


class FaceGroupHub:
    """Lifecycle container injected into the API.

    Collaborators are passed in (tests, alternative providers) or built from
    config on initialize(). Nothing here is process-global.
    """

    def __init__(
        self,
        config: dict[str, Any],
        store: FaceStore | None = None,
        matcher: FaceMatcher | None = None,
    ):
        self.config = config
        self.faces_store: FaceStore | None = store
        self.matcher: FaceMatcher | None = matcher
        self.pipeline: IngestionPipeline | None = None
        self.service: FaceQueryService | None = None
        self._http_session: aiohttp.ClientSession | None = None
        self._running = False

    async def initialize(self) -> None:
        if self.faces_store is None:
            self.faces_store = build_store(self.config)
        initialize = getattr(self.faces_store, "initialize", None)
        if initialize is not None:
            initialize()
        if self.matcher is None:
            self.matcher = build_matcher(self.config)

        self._http_session = aiohttp.ClientSession()
        self.pipeline = IngestionPipeline(
            store=self.faces_store,
            matcher=self.matcher,
            config=self.config,
            session=self._http_session,
        )
        self.service = FaceQueryService(self.faces_store)
        self._running = True
        logger.info(
            "FaceGroup hub initialized (store=%s, collection=%s, threshold=%.1f)",
            type(self.faces_store).__name__,
            self.config.get("faces.collection_id"),
            self.pipeline.grouping.threshold,
        )

    async def shutdown(self) -> None:
        if self._http_session:
            with contextlib.suppress(Exception):
                await self._http_session.close()
            self._http_session = None
        self._running = False
        logger.info("FaceGroup hub shut down")

    def is_running(self) -> bool:
        return self._running
