"""FastAPI REST API for document upload, search and chat."""

import asyncio
import mimetypes
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .logger import logger
from .rag import (
    AnswerSynthesisError,
    AnswerSynthesizer,
    AnthropicCompletionClient,
    ChatService,
    ConversationNotFoundError,
    DocumentNotFoundError,
    EmbeddingClient,
    EmbeddingError,
    Extractor,
    FileUpload,
    IngestionPipeline,
    InvalidMessageError,
    InvalidQueryError,
    LocalBlobStore,
    OpenAIVisionClient,
    PgVectorStore,
    SearchEngine,
    SearchError,
    SearchOptions,
    SearchType,
    StructuredOutputError,
    UploadValidationError,
    UserNotFoundError,
    check_storage,
)
from .rag.conversations import MAX_MESSAGE_LENGTH
from .rag.search import MAX_QUERY_LENGTH, MIN_QUERY_LENGTH

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


# --- Request Models ---


class SessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=200)


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=MIN_QUERY_LENGTH, max_length=MAX_QUERY_LENGTH)
    user_id: UUID
    search_type: SearchType = SearchType.SEMANTIC
    max_results: int = Field(default=10, ge=1, le=50)
    similarity_threshold: float = Field(default=0.7, ge=0, le=1)
    content_types: list[str] | None = None
    required_tags: list[str] | None = None

    def options(self) -> SearchOptions:
        return SearchOptions(
            search_type=self.search_type,
            max_results=self.max_results,
            similarity_threshold=self.similarity_threshold,
            content_types=self.content_types,
            required_tags=self.required_tags,
        )


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    user_id: UUID
    conversation_id: UUID | None = None
    max_results: int = Field(default=10, ge=1, le=50)
    similarity_threshold: float = Field(default=0.7, ge=0, le=1)


class HealthResponse(BaseModel):
    status: str
    checks: dict[str, bool] = Field(default_factory=dict)


# --- App State ---


@dataclass
class Services:
    store: Any
    blob_store: Any
    pipeline: IngestionPipeline
    search_engine: SearchEngine
    chat_service: ChatService | None = None


_services: Services | None = None


def set_services(services: Services | None) -> None:
    """Install prebuilt services; the lifespan then leaves them alone."""
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Services not initialized")
    return _services


def build_services(settings: Settings) -> Services:
    store = PgVectorStore(
        settings.database_url,
        min_connections=settings.db_pool_min,
        max_connections=settings.db_pool_max,
    )
    store.connect()
    store.run_migrations(MIGRATIONS_DIR)

    blob_store = LocalBlobStore(settings.storage_dir, settings.public_base_url)
    embedder = EmbeddingClient(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
    )
    extractor = Extractor(
        vision_client=OpenAIVisionClient(
            api_key=settings.openai_api_key, model=settings.vision_model
        )
    )

    completion_client = None
    if settings.anthropic_api_key:
        completion_client = AnthropicCompletionClient(
            api_key=settings.anthropic_api_key, model=settings.completion_model
        )
    else:
        logger.warn("ANTHROPIC_API_KEY not set, summaries and chat are disabled")

    search_engine = SearchEngine(store, embedder)
    pipeline = IngestionPipeline(
        store,
        blob_store,
        extractor,
        embedder,
        completion_client=completion_client,
        settings=settings,
    )
    chat_service = None
    if completion_client is not None:
        chat_service = ChatService(store, search_engine, AnswerSynthesizer(completion_client))

    return Services(
        store=store,
        blob_store=blob_store,
        pipeline=pipeline,
        search_engine=search_engine,
        chat_service=chat_service,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    global _services

    logger.info("starting server")

    owned = _services is None
    if owned:
        settings = get_settings()
        logger.set_level(settings.log_level)
        _services = build_services(settings)

    yield

    if owned and _services is not None:
        _services.pipeline.shutdown(wait=True)
        _services.store.disconnect()
        _services = None
    logger.info("server shutdown")


app = FastAPI(
    title="Document Search API",
    description="Document upload, semantic search and question answering API",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Response Envelope ---


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "data": jsonable_encoder(data), "timestamp": _timestamp()},
    )


def fail(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "timestamp": _timestamp()},
    )


# --- Exception Handlers ---


@app.exception_handler(UploadValidationError)
@app.exception_handler(InvalidQueryError)
@app.exception_handler(InvalidMessageError)
async def bad_request_handler(request, exc: ValueError):
    return fail(str(exc), 400)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return fail(errors or "Invalid request", 422)


@app.exception_handler(DocumentNotFoundError)
@app.exception_handler(UserNotFoundError)
@app.exception_handler(ConversationNotFoundError)
async def not_found_handler(request, exc: LookupError):
    return fail(str(exc), 404)


@app.exception_handler(SearchError)
@app.exception_handler(EmbeddingError)
@app.exception_handler(AnswerSynthesisError)
@app.exception_handler(StructuredOutputError)
async def upstream_error_handler(request, exc: Exception):
    logger.error("upstream failure", path=request.url.path, error=str(exc))
    return fail(str(exc), 502)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    return fail(str(exc.detail), exc.status_code)


# --- Health Endpoints ---


@app.get("/health", response_model=HealthResponse)
async def health():
    """Liveness check."""
    return HealthResponse(status="healthy")


@app.get("/ready", response_model=HealthResponse)
async def ready():
    """Readiness check - verifies database connectivity."""
    checks = {"database": False}
    if _services is not None:
        checks["database"] = await asyncio.to_thread(_services.store.ping)

    status = "healthy" if all(checks.values()) else "unhealthy"
    return HealthResponse(status=status, checks=checks)


# --- Users ---


@app.post("/api/v1/users/session")
async def create_session(request: SessionRequest):
    """Get or create the anonymous user for a session id."""
    services = get_services()
    user = await asyncio.to_thread(services.pipeline.get_or_create_user, request.session_id)
    return ok(user)


# --- Documents ---


@app.post("/api/v1/documents")
async def upload_documents(
    user_id: UUID | None = Form(None),
    files: list[UploadFile] | None = File(None),
):
    """Upload files; processing continues in the background."""
    services = get_services()
    uploads = []
    for file in files or []:
        filename = file.filename or "upload"
        mime_type = (
            file.content_type
            or mimetypes.guess_type(filename)[0]
            or "application/octet-stream"
        )
        uploads.append(FileUpload(filename=filename, mime_type=mime_type, data=await file.read()))

    queued = await asyncio.to_thread(services.pipeline.upload_documents, user_id, uploads)
    documents = [q.document for q in queued]
    return ok({"documents": documents, "count": len(documents)})


@app.get("/api/v1/documents")
async def list_documents(user_id: UUID = Query(...)):
    services = get_services()
    docs = await asyncio.to_thread(services.pipeline.list_documents, user_id)
    return ok({"documents": docs, "count": len(docs)})


@app.get("/api/v1/documents/{document_id}")
async def get_document(document_id: UUID):
    services = get_services()
    doc = await asyncio.to_thread(services.pipeline.get_document, document_id)
    return ok(doc)


@app.delete("/api/v1/documents/{document_id}")
async def delete_document(document_id: UUID):
    """Delete a document, its chunks and its stored file."""
    services = get_services()
    await asyncio.to_thread(services.pipeline.delete_document, document_id)
    return ok({"deleted": True, "document_id": document_id})


@app.get("/files/{key}")
async def get_file(key: str):
    """Serve a stored upload; this is what document public URLs point at."""
    services = get_services()
    try:
        data = await asyncio.to_thread(services.blob_store.get, key)
    except (FileNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail=f"File {key} not found")
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


# --- Search and Chat ---


@app.post("/api/v1/search")
async def search(request: SearchRequest):
    """Semantic search over the user's documents."""
    services = get_services()
    response = await asyncio.to_thread(
        services.search_engine.search, request.query, request.user_id, request.options()
    )
    return ok(response)


@app.post("/api/v1/chat")
async def chat(request: ChatRequest):
    """Answer a question from the user's documents within a conversation."""
    services = get_services()
    if services.chat_service is None:
        raise HTTPException(status_code=503, detail="Answer generation is not configured")

    options = SearchOptions(
        max_results=request.max_results,
        similarity_threshold=request.similarity_threshold,
    )
    turn = await asyncio.to_thread(
        services.chat_service.ask,
        request.message,
        request.user_id,
        request.conversation_id,
        options,
    )
    return ok(turn)


@app.get("/api/v1/conversations")
async def list_conversations(user_id: UUID = Query(...)):
    services = get_services()
    if services.chat_service is None:
        conversations = await asyncio.to_thread(services.store.list_conversations, user_id)
    else:
        conversations = await asyncio.to_thread(
            services.chat_service.list_conversations, user_id
        )
    return ok({"conversations": conversations, "count": len(conversations)})


# --- Admin ---


@app.get("/api/v1/admin/storage-check")
async def storage_check():
    """Check that the blob store can write, read and delete."""
    services = get_services()
    report = await asyncio.to_thread(check_storage, services.blob_store)
    return ok({**report.model_dump(), "ok": report.ok})
