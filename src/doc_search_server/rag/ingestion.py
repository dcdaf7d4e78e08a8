"""Document ingestion pipeline: upload acceptance and background processing."""

import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from ..config import Settings
from ..logger import log_context, logger
from .chunking import ChunkData, count_words, split_text
from .embeddings import EmbeddingError
from .extraction import ExtractionResult, Extractor, FileUpload
from .models import (
    ChunkRecord,
    Document,
    DocumentNotFoundError,
    DocumentStatus,
    FileCategory,
    User,
    UserNotFoundError,
)
from .storage import BlobStore, make_storage_key
from .structured import CompletionClient, summarize_document
from .tagging import Tagger, tags_from_analysis


class UploadValidationError(ValueError):
    """Raised when an upload request is rejected before anything is stored."""

    pass


@dataclass
class QueuedDocument:
    """A stored upload and the background task processing it.

    The future resolves to the document as it stood when processing ended.
    """

    document: Document
    future: Future


class IngestionPipeline:
    """Accepts uploads and drives each document through its lifecycle.

    ``uploaded -> processing -> chunking -> [embedding ->] processed``, with
    ``error`` reachable from every non-terminal state. Documents are
    processed on a bounded thread pool, independently of each other.
    """

    def __init__(
        self,
        store,
        blob_store: BlobStore,
        extractor: Extractor,
        embedder,
        completion_client: CompletionClient | None = None,
        settings: Settings | None = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize the pipeline.

        Args:
            store: Transactional store (PgVectorStore or compatible).
            blob_store: Where uploaded bytes are kept.
            extractor: Turns uploads into text.
            embedder: Client exposing ``embed_many``.
            completion_client: Used for document summaries. Summaries are
                skipped when it is None.
            settings: Upload limits and chunking parameters.
            executor: Pool for background processing. One is created from
                ``settings.ingest_max_workers`` when omitted.
        """
        self.store = store
        self.blob_store = blob_store
        self.extractor = extractor
        self.embedder = embedder
        self.completion_client = completion_client
        self.settings = settings or Settings()
        self.tagger = Tagger(store)
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.ingest_max_workers,
            thread_name_prefix="ingest",
        )

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    # Users and documents

    def get_or_create_user(self, session_id: str) -> User:
        if not session_id or not session_id.strip():
            raise UploadValidationError("Session ID is required")
        return self.store.get_or_create_user(session_id.strip())

    def list_documents(self, user_id: UUID) -> list[Document]:
        return self.store.list_documents(user_id)

    def get_document(self, document_id: UUID) -> Document:
        doc = self.store.get_document(document_id)
        if doc is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return doc

    def get_document_public_url(self, document_id: UUID) -> str:
        doc = self.get_document(document_id)
        return doc.public_url or self.blob_store.public_url(doc.filename)

    def delete_document(self, document_id: UUID) -> None:
        """Delete a document, its chunks and its stored file."""
        doc = self.get_document(document_id)
        self.store.delete_document(document_id)
        self.blob_store.delete(doc.filename)
        logger.info("document removed", document_id=str(document_id), storage_key=doc.filename)

    # Upload

    def _validate_upload(self, user_id: UUID | None, files: list[FileUpload]) -> None:
        if not user_id:
            raise UploadValidationError("User ID is required")
        if not files:
            raise UploadValidationError("No files provided")
        if len(files) > self.settings.max_files_per_upload:
            raise UploadValidationError(
                f"Too many files: {len(files)} (maximum {self.settings.max_files_per_upload})"
            )
        for upload in files:
            if upload.size == 0:
                raise UploadValidationError(f"File {upload.filename} is empty")
            if upload.size > self.settings.max_upload_size:
                max_mb = self.settings.max_upload_size // (1024 * 1024)
                raise UploadValidationError(
                    f"File {upload.filename} exceeds the maximum size of {max_mb}MB"
                )

    def upload_documents(self, user_id: UUID, files: list[FileUpload]) -> list[QueuedDocument]:
        """Store uploads, create their documents and queue them for processing.

        Every file is validated before any is stored. Returns once each blob
        and document row exists; processing continues in the background.

        Raises:
            UploadValidationError: If the request is rejected.
            UserNotFoundError: If no user has this id.
        """
        self._validate_upload(user_id, files)
        if self.store.get_user(user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")

        # Offset per file so equal names in one batch get distinct keys
        base_ms = int(time.time() * 1000)
        queued = []
        for i, upload in enumerate(files):
            key = make_storage_key(upload.filename, now_ms=base_ms + i)
            blob = self.blob_store.put(key, upload.data, content_type=upload.mime_type)
            try:
                doc = self.store.insert_document(
                    user_id,
                    filename=key,
                    original_filename=upload.filename,
                    storage_path=blob.path,
                    public_url=blob.public_url,
                    file_type=upload.category,
                    file_size=upload.size,
                    mime_type=upload.mime_type,
                    chunk_size=self.settings.chunk_size,
                    chunk_overlap=self.settings.chunk_overlap,
                )
            except Exception:
                self.blob_store.delete(key)
                raise

            future = self.executor.submit(self._run_task, doc.id)
            queued.append(QueuedDocument(document=doc, future=future))

        logger.info(
            "documents uploaded",
            user_id=str(user_id),
            files_count=len(queued),
        )
        return queued

    # Processing

    def _run_task(self, document_id: UUID) -> Document | None:
        """Background entry point; failures end here after being recorded."""
        try:
            return self.process_document(document_id)
        except Exception as e:
            logger.exception(
                "background processing failed",
                document_id=str(document_id),
                error=str(e),
            )
            return self.store.get_document(document_id)

    def process_document(self, document_id: UUID) -> Document:
        """Run a stored document through extraction, chunking and embedding.

        Any failure moves the document to ``error`` with the message in
        ``processing_error`` and is re-raised. Chunks persisted before the
        failure are kept.
        """
        doc = self.get_document(document_id)
        with log_context(document_id=str(document_id), user_id=str(doc.user_id)):
            start = time.perf_counter()
            try:
                doc = self._process(doc)
            except Exception as e:
                self._mark_error(document_id, e)
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "document processed",
                file_name=doc.original_filename,
                chunks_count=doc.processing_metadata.get("chunk_count"),
                duration_ms=round(duration_ms, 2),
            )
            return doc

    def _process(self, doc: Document) -> Document:
        self.store.update_document_status(doc.id, DocumentStatus.PROCESSING)

        upload = FileUpload(
            filename=doc.original_filename,
            mime_type=doc.mime_type or "application/octet-stream",
            data=self.blob_store.get(doc.filename),
        )
        # Images are inlined; local file URLs are not reachable by the vision model
        result = self.extractor.extract(upload)
        text = result.text.replace("\x00", "")

        self.store.update_document_status(
            doc.id, DocumentStatus.CHUNKING, **self._extraction_fields(doc, result, text)
        )

        if result.image_analysis is not None:
            self.tagger.apply(doc.id, tags_from_analysis(result.image_analysis))

        chunks = split_text(
            text,
            metadata={**result.metadata, "document_id": str(doc.id)},
            chunk_size=doc.chunk_size,
            chunk_overlap=doc.chunk_overlap,
        )

        summary = None
        if result.category is FileCategory.DOCUMENT:
            if self.completion_client is not None:
                summary = summarize_document(self.completion_client, text)
            self.store.update_document_status(doc.id, DocumentStatus.EMBEDDING)

        stored_count = self._embed_and_store(doc, chunks)

        final_fields: dict = {"processing_metadata": {"chunk_count": stored_count}}
        if summary is not None:
            final_fields["title"] = summary.title
            final_fields["description"] = summary.summary
            final_fields["processing_metadata"]["summary"] = summary.model_dump()
        return self.store.update_document_status(
            doc.id, DocumentStatus.PROCESSED, **final_fields
        )

    def _extraction_fields(self, doc: Document, result: ExtractionResult, text: str) -> dict:
        fields = {
            "extracted_text": text,
            "content_type": result.category.value,
            "word_count": count_words(text),
            "character_count": len(text),
        }
        if result.title:
            fields["title"] = result.title
        if result.description:
            fields["description"] = result.description
        if result.confidence is not None:
            fields["confidence_score"] = result.confidence
        if result.page_count is not None:
            fields["page_count"] = result.page_count
        if result.image_analysis is not None:
            fields["image_analysis"] = result.image_analysis.model_dump()
            fields["processing_metadata"] = {
                "is_image": True,
                "original_type": doc.mime_type or "",
                "vision_analysis_complete": True,
                "analysis_timestamp": datetime.now(timezone.utc).isoformat(),
            }
        return fields

    def _embed_and_store(self, doc: Document, chunks: list[ChunkData]) -> int:
        """Embed chunk texts and persist the chunks in index order.

        On a failure at index k, chunks 0..k-1 are persisted before
        EmbeddingError is raised.
        """
        if not chunks:
            return 0

        result = self.embedder.embed_many([chunk.content for chunk in chunks])
        failed_at = result.first_failure
        embedded = chunks if failed_at is None else chunks[:failed_at]

        embedded_at = datetime.now(timezone.utc)
        records = [
            ChunkRecord(
                document_id=doc.id,
                user_id=doc.user_id,
                chunk_index=chunk.chunk_index,
                chunk_text=chunk.content,
                metadata=chunk.metadata,
                word_count=count_words(chunk.content),
                character_count=len(chunk.content),
                embedding=result.embeddings[chunk.chunk_index],
                embedded_at=embedded_at,
            )
            for chunk in embedded
        ]
        if records:
            self.store.insert_chunks(records)

        if failed_at is not None:
            raise EmbeddingError(
                f"Embedding failed at chunk {failed_at} of {len(chunks)}: "
                f"{result.errors.get(failed_at)}"
            )
        return len(records)

    def _mark_error(self, document_id: UUID, error: Exception) -> None:
        logger.error(
            "document processing failed",
            error_type=type(error).__name__,
            error=str(error),
        )
        try:
            self.store.update_document_status(
                document_id, DocumentStatus.ERROR, processing_error=str(error)
            )
        except Exception as e:
            logger.error("failed to record processing error", error=str(e))
