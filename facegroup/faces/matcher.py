"""Face matching gateway: Rekognition collection wrapper for detect and similarity search."""

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from facegroup.faces.errors import DetectionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FaceMatch:
    face_id: str
    similarity: float


class FaceMatcher(Protocol):
    """Any provider that can index a face and rank similar ones.

    ``find_similar`` returns matches in the provider's ranking order. Callers
    rely on that order for tie-breaks and must not re-sort it.
    """

    def detect(self, image_ref: str) -> str | None: ...

    def find_similar(self, face_id: str, threshold: float) -> list[FaceMatch]: ...


class RekognitionFaceMatcher:
    """Index faces from S3 objects into a Rekognition collection and search within it."""

    def __init__(  # noqa: PLR0913
        self,
        bucket: str,
        collection_id: str,
        region: str = "us-east-1",
        max_matches: int = 10,
        timeout: float = 10.0,
        client=None,
    ):
        self.bucket = bucket
        self.collection_id = collection_id
        self.max_matches = max_matches
        self._client = client or boto3.client(
            "rekognition",
            region_name=region,
            config=Config(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 2}),
        )

    def ensure_collection(self) -> bool:
        """Create the collection if it doesn't exist. Returns True if created."""
        try:
            self._client.describe_collection(CollectionId=self.collection_id)
            return False
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise
        self._client.create_collection(CollectionId=self.collection_id)
        logger.info("Created Rekognition collection %s", self.collection_id)
        return True

    def detect(self, image_ref: str) -> str | None:
        """Index the largest face in the object. Returns its FaceId, or None if no face."""
        try:
            resp = self._client.index_faces(
                CollectionId=self.collection_id,
                Image={"S3Object": {"Bucket": self.bucket, "Name": image_ref}},
                ExternalImageId=PurePosixPath(image_ref).name,
                MaxFaces=1,
                QualityFilter="AUTO",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            raise DetectionFailed(f"index_faces failed for {image_ref}: {e}", code=code) from e
        except BotoCoreError as e:
            raise DetectionFailed(f"index_faces failed for {image_ref}: {e}") from e

        face_records = resp.get("FaceRecords", [])
        if not face_records:
            return None
        return face_records[0]["Face"]["FaceId"]

    def find_similar(self, face_id: str, threshold: float) -> list[FaceMatch]:
        try:
            resp = self._client.search_faces(
                CollectionId=self.collection_id,
                FaceId=face_id,
                MaxFaces=self.max_matches,
                FaceMatchThreshold=threshold,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            raise DetectionFailed(f"search_faces failed for {face_id}: {e}", code=code) from e
        except BotoCoreError as e:
            raise DetectionFailed(f"search_faces failed for {face_id}: {e}") from e

        return [
            FaceMatch(face_id=m["Face"]["FaceId"], similarity=float(m.get("Similarity", 0.0)))
            for m in resp.get("FaceMatches", [])
        ]
