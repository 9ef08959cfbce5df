"""FastAPI entrypoint for the Marginalia backend."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app_state import MarginaliaAppState
from errors import MissingEmbedding, OverlapError, ServiceUnavailable
from models import (
    AnnotationPayload,
    AnnotationsResponsePayload,
    CreateAnnotationRequest,
    DeleteAnnotationRequest,
    DocumentEventRequest,
    Position,
    RenameDocumentRequest,
    SimilarAnnotationPayload,
    SimilarAnnotationsRequest,
    SimilarAnnotationsResponsePayload,
    SimilarDocumentPayload,
    SimilarDocumentsRequest,
    SimilarDocumentsResponsePayload,
    UpdateAnchorRequest,
    UpdateAnnotationRequest,
)

state: Optional[MarginaliaAppState] = None


def get_state() -> MarginaliaAppState:
    global state
    if state is None:
        state = MarginaliaAppState()
    return state


@asynccontextmanager
async def lifespan(_app: FastAPI):
    current = get_state()
    await asyncio.to_thread(current.start)
    yield
    current.stop()


app = FastAPI(
    title="Marginalia Backend",
    description="Margin notes with semantic search",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceUnavailable)
async def service_unavailable(_request, exc: ServiceUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def _position(payload) -> Position:
    return Position(line=payload.line, ch=payload.ch)


def _similar_documents_response(results) -> SimilarDocumentsResponsePayload:
    return SimilarDocumentsResponsePayload(
        results=[
            SimilarDocumentPayload(file_path=r.file_path, similarity=r.similarity, chunk_id=r.chunk_id)
            for r in results
        ]
    )


@app.get("/", tags=["health"])
async def root():
    return {"status": "ok", "message": "Marginalia backend is running"}


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "message": "Marginalia backend is running"}


@app.get("/status", tags=["health"])
async def status():
    probe = await asyncio.to_thread(get_state().probe)
    return {
        "available": probe.available,
        "installed": probe.installed,
        "missing": probe.missing,
        "error": probe.error,
    }


@app.get("/annotations/{file_path:path}", response_model=AnnotationsResponsePayload, tags=["annotations"])
async def list_annotations(file_path: str):
    items = get_state().annotations.list(file_path)
    return AnnotationsResponsePayload(
        file_path=file_path, items=[AnnotationPayload.from_annotation(i) for i in items]
    )


@app.post("/annotations", response_model=AnnotationPayload, tags=["annotations"])
async def create_annotation(request: CreateAnnotationRequest):
    try:
        item = await asyncio.to_thread(
            get_state().annotations.create,
            request.file_path,
            _position(request.from_pos),
            _position(request.to_pos) if request.to_pos else None,
            request.text,
            request.note,
            request.color,
        )
        return AnnotationPayload.from_annotation(item)
    except OverlapError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.post("/annotations/update", response_model=AnnotationPayload, tags=["annotations"])
async def update_annotation(request: UpdateAnnotationRequest):
    try:
        item = await asyncio.to_thread(
            get_state().annotations.update, request.file_path, request.id, request.note, request.color
        )
        return AnnotationPayload.from_annotation(item)
    except KeyError:
        raise HTTPException(status_code=404, detail="Annotation not found")


@app.post("/annotations/anchor", response_model=AnnotationPayload, tags=["annotations"])
async def update_anchor(request: UpdateAnchorRequest):
    try:
        item = await asyncio.to_thread(
            get_state().annotations.update_anchor,
            request.file_path,
            request.id,
            _position(request.from_pos),
            _position(request.to_pos),
            request.text,
        )
        return AnnotationPayload.from_annotation(item)
    except KeyError:
        raise HTTPException(status_code=404, detail="Annotation not found")


@app.post("/annotations/delete", tags=["annotations"])
async def delete_annotation(request: DeleteAnnotationRequest):
    try:
        get_state().annotations.delete(request.file_path, request.id)
        return {"success": True, "id": request.id}
    except KeyError:
        raise HTTPException(status_code=404, detail="Annotation not found")


@app.post("/annotations/similar", response_model=SimilarAnnotationsResponsePayload, tags=["search"])
async def similar_annotations(request: SimilarAnnotationsRequest):
    try:
        results = get_state().annotations.find_similar(
            request.file_path, request.id, request.facet, request.threshold
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Annotation not found")
    except MissingEmbedding as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return SimilarAnnotationsResponsePayload(
        results=[
            SimilarAnnotationPayload(
                file_path=r.file_path,
                similarity=r.similarity,
                item=AnnotationPayload.from_annotation(r.annotation),
            )
            for r in results
        ]
    )


@app.post("/annotations/similar-documents", response_model=SimilarDocumentsResponsePayload, tags=["search"])
async def annotation_similar_documents(request: SimilarAnnotationsRequest):
    try:
        results = get_state().annotations.find_similar_documents(
            request.file_path, request.id, request.threshold, request.facet
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Annotation not found")
    except MissingEmbedding as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _similar_documents_response(results)


@app.post("/documents/similar", response_model=SimilarDocumentsResponsePayload, tags=["search"])
async def similar_documents(request: SimilarDocumentsRequest):
    try:
        results = get_state().indexer.similar_documents(request.file_path, request.threshold)
    except MissingEmbedding as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _similar_documents_response(results)


@app.post("/documents/changed", tags=["index"])
async def document_changed(request: DocumentEventRequest):
    queued = get_state().queue.notify_changed(request.file_path)
    return {"success": True, "queued": queued}


@app.post("/documents/deleted", tags=["index"])
async def document_deleted(request: DocumentEventRequest):
    get_state().queue.notify_deleted(request.file_path)
    return {"success": True}


@app.post("/documents/renamed", tags=["index"])
async def document_renamed(request: RenameDocumentRequest):
    current = get_state()
    current.queue.notify_renamed(request.old_path, request.new_path)
    moved = current.annotations.rename_document(request.old_path, request.new_path)
    return {"success": True, "annotations_moved": moved}


@app.get("/index/status", tags=["index"])
async def index_status():
    current = get_state()
    return {"queue": current.queue.status(), "index": current.index.get_stats()}


@app.post("/admin/sweep", tags=["admin"])
async def sweep():
    queued = await asyncio.to_thread(get_state().queue.sweep)
    return {"success": True, "queued": queued}


@app.post("/admin/pause", tags=["admin"])
async def pause():
    get_state().queue.pause()
    return {"success": True, "enabled": False}


@app.post("/admin/resume", tags=["admin"])
async def resume():
    queued = await asyncio.to_thread(get_state().queue.resume)
    return {"success": True, "enabled": True, "queued": queued}


@app.post("/admin/backfill", tags=["admin"])
async def backfill():
    current = get_state()
    if not await asyncio.to_thread(current.client.is_available):
        raise HTTPException(status_code=503, detail="Inference service is not available")
    generated = await asyncio.to_thread(current.annotations.backfill_embeddings)
    return {"success": True, "generated": generated}


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.environ.get("MARGINALIA_HOST", "127.0.0.1"),
        port=int(os.environ.get("MARGINALIA_PORT", "8000")),
    )
