"""Similarity search endpoints."""

from typing import List

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from pydantic import BaseModel, Field

from gallery.dependencies import get_search_engine
from gallery.ratelimit import client_identity
from gallery.search import SearchEngine


router = APIRouter(prefix="/search", tags=["search"])


class VectorSearchRequest(BaseModel):
    vector: List[float]
    page: int = Field(1, ge=1)


@router.get("")
def search_by_text(
    request: Request,
    q: str = Query("", description="Free-text query"),
    page: int = Query(1, ge=1),
    engine: SearchEngine = Depends(get_search_engine),
):
    response = engine.search_by_text(q, page=page, client_id=client_identity(request))
    return response.to_dict()


@router.post("/image")
def search_by_image(
    request: Request,
    file: UploadFile = File(...),
    page: int = Form(1),
    engine: SearchEngine = Depends(get_search_engine),
):
    data = file.file.read()
    response = engine.search_by_image(data, page=page, client_id=client_identity(request))
    return response.to_dict()


@router.post("/vector")
def search_by_vector(
    request: Request,
    body: VectorSearchRequest,
    engine: SearchEngine = Depends(get_search_engine),
):
    response = engine.search_by_vector(body.vector, page=body.page, client_id=client_identity(request))
    return response.to_dict()
