"""
Documents API Router

  POST   /api/v1/documents               multipart upload (metadata + optional file)
  GET    /api/v1/documents               paged list, newest first (?q=, ?tag=)
  GET    /api/v1/documents/{id}
  PATCH  /api/v1/documents/{id}          title / description / tags
  DELETE /api/v1/documents/{id}
  POST   /api/v1/documents/bulk-delete
  POST   /api/v1/documents/{id}/ocr      re-run OCR for a stored PDF

Handlers stay thin: parse the request, call DocumentService, map to the
response schema. DmsError is translated to HTTP by the app-level handler.
"""

from __future__ import annotations

import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, Response, UploadFile, status

from dms.api.dependencies import DocumentServiceDep
from dms.schemas.documents import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    DocumentListResponse,
    DocumentResponse,
    DocumentUpdateRequest,
)
from dms.services.documents import UploadedFile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=DocumentResponse,
    summary="Upload a document",
    description="Stores metadata and the file. PDFs are queued for OCR and summarisation.",
)
async def create_document(
    service: DocumentServiceDep,
    title: Annotated[str, Form()],
    description: Annotated[Optional[str], Form()] = None,
    tags: Annotated[Optional[list[str]], Form()] = None,
    file: Annotated[Optional[UploadFile], File()] = None,
) -> DocumentResponse:
    upload = None
    if file is not None:
        upload = UploadedFile(
            filename=file.filename,
            content=await file.read(),
            content_type=file.content_type,
        )
    doc = await service.create(title=title, description=description, tags=tags or [], upload=upload)
    return DocumentResponse.from_document(doc)


@router.get("", response_model=DocumentListResponse, summary="List documents")
async def list_documents(
    service: DocumentServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    size: Annotated[int, Query(ge=1, le=100)] = 20,
    q: Annotated[Optional[str], Query(max_length=200)] = None,
    tag: Annotated[Optional[str], Query(max_length=64)] = None,
) -> DocumentListResponse:
    result = await service.list_documents(page, size, query=q, tag=tag)
    return DocumentListResponse(
        items=[DocumentResponse.from_document(d) for d in result.items],
        total=result.total,
        page=result.page,
        size=result.size,
    )


@router.get("/{document_id}", response_model=DocumentResponse, summary="Get one document")
async def get_document(document_id: UUID, service: DocumentServiceDep) -> DocumentResponse:
    return DocumentResponse.from_document(await service.get(document_id))


@router.patch("/{document_id}", response_model=DocumentResponse, summary="Update metadata")
async def update_document(
    document_id: UUID,
    body: DocumentUpdateRequest,
    service: DocumentServiceDep,
) -> DocumentResponse:
    doc = await service.update(
        document_id,
        title=body.title,
        description=body.description,
        tags=body.tags,
    )
    return DocumentResponse.from_document(doc)


@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete a document",
)
async def delete_document(document_id: UUID, service: DocumentServiceDep) -> Response:
    await service.delete(document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/bulk-delete", response_model=BulkDeleteResponse, summary="Delete several documents")
async def bulk_delete_documents(body: BulkDeleteRequest, service: DocumentServiceDep) -> BulkDeleteResponse:
    return BulkDeleteResponse(deleted=await service.delete_many(body.ids))


@router.post(
    "/{document_id}/ocr",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=DocumentResponse,
    summary="Re-run OCR",
    description="Publishes a new OCR job for a stored PDF. The summary is kept; ocr_text is overwritten.",
)
async def requeue_ocr(document_id: UUID, service: DocumentServiceDep) -> DocumentResponse:
    return DocumentResponse.from_document(await service.requeue_ocr(document_id))
