"""Image record endpoints: upload, list, edit, delete, embedding re-trigger, similar images."""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from gallery import records
from gallery.errors import NotFoundError
from gallery.dependencies import get_blob_store, get_db, get_search_engine, get_task_queue
from gallery.metadata import ImageRecord
from gallery.ratelimit import client_identity, limiter
from gallery.search import SearchEngine
from gallery.settings import settings
from gallery.storage import BlobNotFoundError, BlobStore
from gallery.tasks import TaskQueue


router = APIRouter(prefix="/images", tags=["images"])


class UpdateImageRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


def serialize_record(record: ImageRecord) -> dict:
    return {
        "id": record.id,
        "name": record.name,
        "description": record.description,
        "filename": record.filename,
        "content_type": record.content_type,
        "byte_size": record.byte_size,
        "has_file": record.has_file,
        "has_embedding": record.has_embedding,
        "embedding_updated_at": record.embedding_updated_at.isoformat() if record.embedding_updated_at else None,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.upload_rate_limit)
def upload_image(
    request: Request,
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    skip_generation: bool = Form(False),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    queue: TaskQueue = Depends(get_task_queue),
):
    """Store an uploaded image; captioning and embedding run in the background."""
    data = file.file.read()
    record = records.create_record(
        db,
        blob_store,
        queue,
        data=data,
        filename=file.filename,
        content_type=file.content_type,
        name=name,
        description=description,
        skip_generation=skip_generation,
    )
    return serialize_record(record)


@router.get("")
def list_images(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = records.list_records(db, limit=limit, offset=offset)
    return {
        "images": [serialize_record(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{image_id}")
def get_image(image_id: int, db: Session = Depends(get_db)):
    return serialize_record(records.get_record(db, image_id))


@router.get("/{image_id}/file")
def get_image_file(
    image_id: int,
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    record = records.get_record(db, image_id)
    if not record.has_file:
        raise NotFoundError(image_id)
    try:
        data = blob_store.get(record.file_key)
    except BlobNotFoundError as exc:
        raise NotFoundError(image_id) from exc
    return Response(content=data, media_type=record.content_type or "application/octet-stream")


@router.patch("/{image_id}")
def update_image(image_id: int, body: UpdateImageRequest, db: Session = Depends(get_db)):
    record = records.update_record(db, image_id, name=body.name, description=body.description)
    return serialize_record(record)


@router.delete("/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_image(
    image_id: int,
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    records.delete_record(db, blob_store, image_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{image_id}/embedding", status_code=status.HTTP_202_ACCEPTED)
def regenerate_embedding(
    image_id: int,
    db: Session = Depends(get_db),
    queue: TaskQueue = Depends(get_task_queue),
):
    job = records.request_embedding(db, queue, image_id)
    return {"image_id": image_id, "job_id": str(job.id), "status": job.status}


@router.get("/{image_id}/similar")
def similar_images(
    request: Request,
    image_id: int,
    limit: Optional[int] = Query(None, ge=1, le=100),
    engine: SearchEngine = Depends(get_search_engine),
):
    response = engine.similar_to(image_id, limit=limit, client_id=client_identity(request))
    return response.to_dict()
