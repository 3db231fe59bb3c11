"""
Composed FastAPI Dependencies

Route handlers import from here. Every long-lived component (settings,
tracker, repository, embedder, submission service) is built once by the
application factory and stored on app.state; these functions only look
them up, so tests can swap any of them with app.dependency_overrides.
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from docpipe.core.config import Settings
from docpipe.db.repository import DocumentRepository
from docpipe.processing.embeddings import Embedder
from docpipe.progress.tracker import ProgressTracker
from docpipe.schemas.documents import UploadErrors
from docpipe.services.ingestion import IngestionService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tracker(request: Request) -> ProgressTracker:
    return request.app.state.tracker


def get_repository(request: Request) -> DocumentRepository:
    return request.app.state.repository


def get_embedder(request: Request) -> Embedder:
    return request.app.state.embedder


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion


async def get_owner_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> str:
    """
    Caller identity supplied by the upstream auth layer.
    Authentication itself happens before requests reach this service.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=UploadErrors.unauthorized().model_dump(),
        )
    return x_user_id.strip()


AppSettings = Annotated[Settings,         Depends(get_app_settings)]
Tracker    = Annotated[ProgressTracker,    Depends(get_tracker)]
Repository = Annotated[DocumentRepository, Depends(get_repository)]
EmbedderDep = Annotated[Embedder,          Depends(get_embedder)]
Ingestion  = Annotated[IngestionService,   Depends(get_ingestion_service)]
OwnerId    = Annotated[str,                Depends(get_owner_id)]
