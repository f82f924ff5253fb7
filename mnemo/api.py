"""FastAPI REST API wrapper for the Mnemo engine."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .engine import Mnemo, create_mnemo
from .errors import ConfigurationError, MnemoError, ProviderError, UserInputError
from .models import ContentUnit


logger = logging.getLogger(__name__)


# ============ Request/Response Models ============

class UnitItem(BaseModel):
    """A content unit produced by an external loader."""
    source_path: str
    text: str
    sequence_order: int = 0
    header_path: List[str] = Field(default_factory=list)


class IndexRequest(BaseModel):
    """Request body for indexing."""
    units: List[UnitItem] = Field(..., description="Content units of this indexing run")
    mode: Optional[str] = Field(default=None, description="'full' or 'by_file'")
    batch_size: Optional[int] = Field(default=None, ge=1)


class IndexResponse(BaseModel):
    num_added: int
    num_skipped: int
    num_deleted: int


class SearchRequest(BaseModel):
    query: str = Field(..., description="Search query")
    k: Optional[int] = Field(default=None, ge=1, le=200)


class SearchResultItem(BaseModel):
    id: str
    source_path: str
    sequence_order: int
    header_path: List[str]
    text: str
    score: float


class SearchResponse(BaseModel):
    results: List[SearchResultItem]
    query: str
    count: int


class RunRequest(BaseModel):
    query: str
    chat_history: str = ""
    mode: str = "rag"  # "rag" or "conversation"


class DeleteSourcesRequest(BaseModel):
    sources: List[str]


class ThresholdRequest(BaseModel):
    similarity_threshold: float = Field(..., ge=0.0, le=1.0)


# ============ App Factory ============

_STATUS_CODES = {
    ConfigurationError: 400,
    UserInputError: 422,
    ProviderError: 502,
}


def _status_for(error: MnemoError) -> int:
    for error_type, status in _STATUS_CODES.items():
        if isinstance(error, error_type):
            return status
    return 500


def create_app(mnemo: Optional[Mnemo] = None, **kwargs) -> FastAPI:
    """
    Create a FastAPI app wrapping a Mnemo instance.

    Args:
        mnemo: Prebuilt engine; built with create_mnemo(**kwargs) on startup if None
        **kwargs: Arguments for create_mnemo
    """
    engine: Optional[Mnemo] = mnemo

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal engine
        if engine is None:
            engine = create_mnemo(**kwargs)
        yield
        if engine is not None:
            engine.close()

    app = FastAPI(
        title="Mnemo API",
        description="Incremental knowledge indexing and streamed retrieval-augmented answers",
        version="1.0.0",
        lifespan=lifespan,
    )

    def get_engine() -> Mnemo:
        if engine is None:
            raise HTTPException(status_code=503, detail="Mnemo not initialized")
        return engine

    @app.exception_handler(MnemoError)
    async def mnemo_error_handler(request: Request, exc: MnemoError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=_status_for(exc), content=exc.to_dict())

    # ============ Endpoints ============

    @app.post("/index", response_model=IndexResponse, tags=["Indexing"])
    def index_units(request: IndexRequest):
        """Index one run's content units and delete stale entries."""
        units = [ContentUnit(**item.model_dump()) for item in request.units]
        stats = get_engine().index_all(units, mode=request.mode, batch_size=request.batch_size)
        return IndexResponse(**stats.to_dict())

    @app.post("/sources/delete", tags=["Indexing"])
    def delete_sources(request: DeleteSourcesRequest):
        """Unindex every unit of the given sources."""
        deleted = get_engine().delete(sources=request.sources)
        return {"deleted": deleted, "sources": request.sources}

    @app.post("/search", response_model=SearchResponse, tags=["Search"])
    def search(request: SearchRequest):
        """Similarity search over the indexed units."""
        results = get_engine().search(request.query, k=request.k)
        return SearchResponse(
            results=[
                SearchResultItem(
                    id=r.unit.id,
                    source_path=r.unit.source_path,
                    sequence_order=r.unit.sequence_order,
                    header_path=r.unit.header_path,
                    text=r.unit.text,
                    score=r.score,
                )
                for r in results
            ],
            query=request.query,
            count=len(results),
        )

    @app.post("/run", tags=["Chat"])
    def run(request: RunRequest):
        """
        Answer a query, streaming progress events as NDJSON lines.

        Each line is ``{"status": ..., "content": ...}``. A failure after the
        stream has started ends it with ``{"status": "error", "error": {...}}``.
        """
        events = get_engine().run(request.query, request.chat_history, mode=request.mode)

        def ndjson():
            try:
                for event in events:
                    yield json.dumps(event.to_dict()) + "\n"
            except MnemoError as exc:
                logger.error(f"POST /run failed mid-stream: {exc}")
                yield json.dumps({"status": "error", "error": exc.to_dict()}) + "\n"

        return StreamingResponse(ndjson(), media_type="application/x-ndjson")

    @app.post("/run/stop", tags=["Chat"])
    def stop_run():
        """Ask the active run to stop at its next step."""
        get_engine().stop_run()
        return {"stopping": True}

    @app.put("/settings/similarity-threshold", tags=["Management"])
    def set_threshold(request: ThresholdRequest):
        get_engine().set_similarity_threshold(request.similarity_threshold)
        return {"similarity_threshold": request.similarity_threshold}

    @app.get("/snapshot", tags=["Management"])
    def download_snapshot():
        """Download the whole corpus as one binary payload."""
        return Response(content=get_engine().get_data(), media_type="application/octet-stream")

    @app.put("/snapshot", tags=["Management"])
    async def upload_snapshot(request: Request):
        """Replace the whole corpus with an uploaded snapshot."""
        payload = await request.body()
        get_engine().load(payload)
        return {"loaded": True, "bytes": len(payload)}

    @app.post("/reconcile", tags=["Management"])
    def reconcile():
        """Remove entries present in only one of vector store and ledger."""
        return get_engine().reconcile()

    @app.get("/stats", tags=["Management"])
    def get_stats() -> Dict[str, Any]:
        return get_engine().get_stats()

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "service": "mnemo"}

    return app
