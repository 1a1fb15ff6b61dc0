"""
FastAPI dependencies.

The object store and the job publisher are process-wide and created in the
app lifespan (stored on app.state); the DB session is per request.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dms.db.session import get_db
from dms.messaging.publisher import OcrJobPublisher
from dms.services.documents import DocumentService
from dms.storage.s3 import ObjectStore


def get_storage(request: Request) -> ObjectStore:
    return request.app.state.storage


def get_publisher(request: Request) -> OcrJobPublisher:
    return request.app.state.publisher


def get_document_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    storage: Annotated[ObjectStore, Depends(get_storage)],
    publisher: Annotated[OcrJobPublisher, Depends(get_publisher)],
) -> DocumentService:
    return DocumentService(db=db, storage=storage, publisher=publisher)


DocumentServiceDep = Annotated[DocumentService, Depends(get_document_service)]
