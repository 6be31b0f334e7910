"""FastAPI routes for the S3 event webhook and the face query/rename API."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from facegroup.faces.errors import (
    FaceNotFound,
    InvalidName,
    MalformedPayload,
    PartialRenamePropagation,
    SubscriptionConfirmationFailed,
)

logger = logging.getLogger(__name__)


class RenameRequest(BaseModel):
    name: str


class NameRequest(BaseModel):
    faceId: str  # noqa: N815 (camelCase like the rest of the API)
    name: str


def _register_face_routes(router: APIRouter, hub: Any) -> None:  # noqa: C901
    """Register webhook and /faces endpoints on the given router."""

    def _pipeline():
        pipeline = getattr(hub, "pipeline", None)
        if pipeline is None:
            raise HTTPException(status_code=503, detail="Ingestion pipeline not initialized")
        return pipeline

    def _service():
        service = getattr(hub, "service", None)
        if service is None:
            raise HTTPException(status_code=503, detail="Face store not initialized")
        return service

    def _rename(face_id: str, name: str) -> dict[str, Any]:
        try:
            result = _service().rename_face(face_id, name)
        except FaceNotFound:
            raise HTTPException(status_code=404, detail=f"FaceId not found: {face_id}") from None
        except InvalidName as e:
            raise HTTPException(status_code=422, detail=str(e)) from None
        except PartialRenamePropagation as e:
            logger.error("Partial rename of group %s: %d updated, %d failed", e.group_id, len(e.updated), len(e.failed))
            raise HTTPException(
                status_code=500,
                detail={
                    "error": "partial_rename",
                    "groupId": e.group_id,
                    "updated": e.updated,
                    "failed": e.failed,
                },
            ) from None
        return {"status": "ok", "groupId": result.group_id, "name": result.name, "updated": result.updated}

    @router.post("/s3-event")
    async def s3_event(request: Request):
        """SNS webhook: subscription handshake or S3 upload notification."""
        try:
            pipeline = _pipeline()
            body = await request.body()
            result = await pipeline.handle(body)
            return result.summary()
        except HTTPException:
            raise
        except MalformedPayload as e:
            logger.error("Invalid SNS message: %s", e)
            raise HTTPException(status_code=400, detail=f"Invalid SNS message: {e}") from None
        except SubscriptionConfirmationFailed as e:
            logger.error("SNS subscription confirmation failed: %s", e)
            raise HTTPException(status_code=502, detail="Subscription confirmation failed") from None
        except Exception:
            logger.exception("Error processing SNS event")
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/faces")
    async def list_faces(all: bool = False):  # noqa: A002
        """Return stored faces, limited to the configured collection unless all=true."""
        try:
            service = _service()
            collection = None if all else hub.config.get("faces.collection_id")
            return [r.to_api() for r in service.list_faces(collection)]
        except HTTPException:
            raise
        except Exception:
            logger.exception("Error fetching faces")
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/faces/groups/{group_id}")
    async def list_group(group_id: str):
        """Return every face sharing group_id."""
        try:
            faces = _service().list_group(group_id)
            return {"groupId": group_id, "faces": [r.to_api() for r in faces]}
        except HTTPException:
            raise
        except Exception:
            logger.exception("Error fetching group %s", group_id)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/faces/{face_id}")
    async def get_face(face_id: str):
        try:
            return _service().get_face(face_id).to_api()
        except HTTPException:
            raise
        except FaceNotFound:
            raise HTTPException(status_code=404, detail=f"FaceId not found: {face_id}") from None
        except Exception:
            logger.exception("Error fetching face %s", face_id)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.post("/faces/{face_id}/rename")
    async def rename_face(face_id: str, req: RenameRequest):
        """Rename face_id and every other face in its group."""
        try:
            return _rename(face_id, req.name)
        except HTTPException:
            raise
        except Exception:
            logger.exception("Error renaming face %s", face_id)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.post("/name")
    async def name_face(req: NameRequest):
        """Body-addressed alias of POST /faces/{face_id}/rename."""
        try:
            return _rename(req.faceId, req.name)
        except HTTPException:
            raise
        except Exception:
            logger.exception("Error renaming face %s", req.faceId)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/health")
    async def health():
        """Liveness plus ingestion counters."""
        pipeline = getattr(hub, "pipeline", None)
        return {
            "status": "ok" if hub.is_running() else "starting",
            "last_processed_at": pipeline.last_processed_at if pipeline else None,
            "pipeline_errors": pipeline.error_count if pipeline else 0,
        }
