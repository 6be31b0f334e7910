"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facegroup.hub.core import FaceGroupHub
from facegroup.hub.routes_faces import _register_face_routes

logger = logging.getLogger(__name__)


def create_api(hub: FaceGroupHub) -> FastAPI:
    """Build the app around an injected hub. The hub is initialized on startup if needed."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if not hub.is_running():
            await hub.initialize()
        try:
            yield
        finally:
            await hub.shutdown()

    app = FastAPI(title="FaceGroup", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(hub.config.get("api.cors_origins", ["*"])),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    router = APIRouter()
    _register_face_routes(router, hub)
    app.include_router(router)
    return app
