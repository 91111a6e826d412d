"""FastAPI REST API wrapper for the Anchor engine."""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .anchor import Anchor
from .config import AnchorConfig
from .errors import AnchorError, ServiceUnavailable, ValidationError
from .models import Document


# ============ Request/Response Models ============

class DocumentIn(BaseModel):
    """A raw document to ingest."""
    text: str = Field(..., description="Document text")
    title: str = Field(default="", description="Human-readable title used in citations")
    source: str = Field(default="", description="Source URI; re-ingesting a source replaces it")
    id: Optional[str] = Field(default=None, description="Explicit document id (content hash if omitted)")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IngestRequest(BaseModel):
    """Request body for document ingestion."""
    documents: List[DocumentIn]


class RejectedItem(BaseModel):
    document: str
    reason: str


class IngestResponse(BaseModel):
    """Response from ingestion."""
    accepted: List[str]
    rejected: List[RejectedItem]
    index_version: int
    chunks: int


class QueryRequest(BaseModel):
    """Request body for query and search."""
    query: str = Field(..., description="Natural-language question")
    k: Optional[int] = Field(default=None, description="Number of chunks to retrieve")
    mode: Optional[str] = Field(
        default=None, description="Retrieval mode: 'semantic', 'lexical', or 'hybrid'"
    )


class SourceItem(BaseModel):
    title: str
    source: str
    score: float
    offset: int
    chunk_ordinal: int


class QueryResponse(BaseModel):
    """Grounded answer with its sources."""
    answer: str
    sources: List[SourceItem]
    prompt: str
    confidence: float


class SearchResultItem(BaseModel):
    """Single search result."""
    chunk_id: str
    doc_id: str
    title: str
    source: str
    text: str
    score: float
    relevance: float
    rank: int
    offset: int
    chunk_ordinal: int


class SearchResponse(BaseModel):
    """Response from search."""
    results: List[SearchResultItem]
    query: str
    mode: str
    index_version: int
    count: int


class DeleteResponse(BaseModel):
    """Response from delete operations."""
    deleted: int
    doc_id: str
    index_version: int


# ============ App Factory ============

def create_app(config: Optional[AnchorConfig] = None, *, engine: Optional[Anchor] = None) -> FastAPI:
    """
    Create a FastAPI app wrapping an Anchor instance.

    Args:
        config: Engine configuration (``AnchorConfig.from_env()`` when omitted)
        engine: Pre-built engine to serve instead of creating one

    Returns:
        FastAPI app instance
    """
    anchor_instance: Optional[Anchor] = engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal anchor_instance
        owned = anchor_instance is None
        if owned:
            anchor_instance = Anchor(config or AnchorConfig.from_env())
        yield
        if owned and anchor_instance:
            anchor_instance.close()
            anchor_instance = None

    app = FastAPI(
        title="Anchor API",
        description="Grounded question answering with cited sources",
        version="0.1.0",
        lifespan=lifespan,
    )

    def get_anchor() -> Anchor:
        if anchor_instance is None:
            raise HTTPException(status_code=503, detail="Anchor not initialized")
        return anchor_instance

    # ============ Error mapping ============

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"error": exc.message, "stage": exc.stage})

    @app.exception_handler(ServiceUnavailable)
    async def service_unavailable(request: Request, exc: ServiceUnavailable):
        return JSONResponse(
            status_code=503,
            content={"error": exc.message, "stage": exc.stage, "attempts": exc.attempts},
        )

    # Any other engine error
    @app.exception_handler(AnchorError)
    async def server_error(request: Request, exc: AnchorError):
        return JSONResponse(status_code=500, content={"error": exc.message, "stage": exc.stage})

    # ============ Endpoints ============
    # Plain ``def`` handlers run in the threadpool, so independent queries proceed in parallel.

    @app.post("/ingest", response_model=IngestResponse, tags=["Ingestion"])
    def ingest_documents(request: IngestRequest):
        """
        Ingest documents into the engine.

        Documents are chunked, embedded, and swapped into a new index version.
        """
        docs = [
            Document(text=d.text, title=d.title, source=d.source, doc_id=d.id, metadata=d.metadata)
            for d in request.documents
        ]
        report = get_anchor().ingest(docs)
        return report.to_dict()

    @app.post("/query", response_model=QueryResponse, tags=["Query"])
    def query(request: QueryRequest):
        """Answer a question with cited sources, or the unsupported sentinel."""
        record = get_anchor().ask(request.query, k=request.k, mode=request.mode)
        return record.to_response()

    @app.post("/search", response_model=SearchResponse, tags=["Query"])
    def search(request: QueryRequest):
        """
        Search for relevant chunks.

        Supports three modes:
        - **semantic**: Vector similarity
        - **lexical**: BM25 keyword scoring
        - **hybrid**: Weighted blend of both (default)
        """
        result = get_anchor().search(request.query, k=request.k, mode=request.mode)
        return SearchResponse(
            results=[
                SearchResultItem(
                    chunk_id=item.chunk_id,
                    doc_id=item.chunk.doc_id,
                    title=item.document.title,
                    source=item.document.source,
                    text=item.chunk.text,
                    score=item.score,
                    relevance=item.relevance,
                    rank=item.rank,
                    offset=item.chunk.start,
                    chunk_ordinal=item.chunk.ordinal,
                )
                for item in result
            ],
            query=result.query,
            mode=result.mode,
            index_version=result.index_version,
            count=len(result),
        )

    @app.delete("/documents/{doc_id}", response_model=DeleteResponse, tags=["Management"])
    def delete_document(doc_id: str):
        """Delete a document and all its chunks."""
        anchor = get_anchor()
        deleted = anchor.delete_document(doc_id)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Document {doc_id} not found")
        return DeleteResponse(deleted=deleted, doc_id=doc_id, index_version=anchor.store.version)

    @app.post("/reindex", tags=["Management"])
    def reindex():
        """Re-chunk and re-embed every document into a new index version."""
        return {"index_version": get_anchor().reindex()}

    @app.get("/stats", tags=["Management"])
    def get_stats():
        """Get engine statistics including cache info."""
        return get_anchor().get_stats()

    @app.post("/cache/clear", tags=["Cache"])
    def clear_cache():
        """Clear the answer cache."""
        return {"cleared": True, "entries_cleared": get_anchor().clear_cache()}

    @app.get("/health", tags=["Health"])
    def health_check():
        """Health check endpoint."""
        anchor = get_anchor()
        return {"status": "healthy", "service": "anchor", "index_version": anchor.store.version}

    return app


# Default app for `uvicorn anchor.api:app`, configured from ANCHOR_* variables
app = create_app()
