"""Shared fixtures: in-memory fakes for the store, blob store and model clients."""

import hashlib
import itertools
import json
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest

from doc_search_server.config import Settings
from doc_search_server.rag.embeddings import EmbeddingResult
from doc_search_server.rag.extraction import Extractor
from doc_search_server.rag.ingestion import IngestionPipeline
from doc_search_server.rag.models import (
    PROCESSING_METADATA_FIELDS,
    ChunkRecord,
    Conversation,
    Document,
    DocumentNotFoundError,
    DocumentStatus,
    DocumentTag,
    Message,
    MessageRole,
    SearchHit,
    SearchQueryRecord,
    SearchType,
    TagSource,
    User,
    validate_metadata,
    validate_transition,
)
from doc_search_server.rag.storage import StoredBlob
from doc_search_server.rag.tagging import (
    TagAssignment,
    TagCandidate,
    compute_auto_tags,
    merge_tags,
)

FAKE_DIMENSIONS = 64


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hash_embedding(text: str, dimensions: int = FAKE_DIMENSIONS) -> list[float]:
    """Deterministic bag-of-words vector: texts sharing words point the same way."""
    vector = [0.0] * dimensions
    for word in text.lower().split():
        word = word.strip(".,!?:;\"'()")
        if not word:
            continue
        index = int(hashlib.sha256(word.encode()).hexdigest(), 16) % dimensions
        vector[index] += 1.0
    norm = math.sqrt(sum(x * x for x in vector))
    return [x / norm for x in vector] if norm else vector


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeEmbedder:
    """Hash-based embedder. ``fail_from`` makes every text at or after that index fail."""

    def __init__(self, fail_from: int | None = None):
        self.fail_from = fail_from
        self.calls: list[list[str]] = []

    def embed_one(self, text: str) -> list[float]:
        self.calls.append([text])
        return hash_embedding(text)

    def embed_many(self, texts: list[str]) -> EmbeddingResult:
        self.calls.append(list(texts))
        result = EmbeddingResult(embeddings=[])
        for i, text in enumerate(texts):
            if self.fail_from is not None and i >= self.fail_from:
                result.embeddings.append(None)
                result.failed_indices.append(i)
                result.errors[i] = "Rate limit exceeded"
            else:
                result.embeddings.append(hash_embedding(text))
        return result


class FakeBlobStore:
    def __init__(self, base_url: str = "http://testserver"):
        self.base_url = base_url
        self.blobs: dict[str, bytes] = {}

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredBlob:
        self.blobs[key] = data
        return StoredBlob(
            key=key, path=f"memory://{key}", size=len(data), public_url=self.public_url(key)
        )

    def get(self, key: str) -> bytes:
        if key not in self.blobs:
            raise FileNotFoundError(key)
        return self.blobs[key]

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/files/{key}"

    def delete(self, key: str) -> bool:
        return self.blobs.pop(key, None) is not None


class FakeVisionClient:
    def __init__(self, reply: str):
        self.reply = reply
        self.calls: list[str] = []

    def analyze(self, image_url: str, prompt: str = "") -> str:
        self.calls.append(image_url)
        return self.reply


class FakeCompletionClient:
    """Returns canned replies in order; an Exception instance is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class InMemoryStore:
    """Thread-safe in-memory stand-in for PgVectorStore."""

    def __init__(self):
        self._lock = threading.RLock()
        self._seq = itertools.count()
        self.users: dict[str, User] = {}
        self.documents: dict[UUID, Document] = {}
        self.document_seq: dict[UUID, int] = {}
        self.chunks: dict[UUID, ChunkRecord] = {}
        self.tags: dict[str, UUID] = {}
        self.tag_categories: dict[str, str | None] = {}
        self.document_tags: dict[tuple[UUID, str], DocumentTag] = {}
        self.search_queries: dict[UUID, SearchQueryRecord] = {}
        self.query_embeddings: dict[UUID, list[float]] = {}
        self.search_results: list[tuple[UUID, UUID, float, int]] = []
        self.conversations: dict[UUID, Conversation] = {}
        self.messages: list[Message] = []
        self.status_history: dict[UUID, list[DocumentStatus]] = {}
        self.fail_enhanced = False
        self.fail_basic = False
        self.fail_insert_chunks = False

    def ping(self) -> bool:
        return True

    def get_or_create_user(self, session_id: str) -> User:
        with self._lock:
            user = self.users.get(session_id)
            if user is None:
                now = _now()
                user = User(
                    id=uuid4(),
                    session_id=session_id,
                    created_at=now,
                    updated_at=now,
                    last_activity=now,
                )
            else:
                user = user.model_copy(update={"last_activity": _now()})
            self.users[session_id] = user
            return user

    def get_user(self, user_id) -> User | None:
        with self._lock:
            return next((u for u in self.users.values() if u.id == user_id), None)

    def insert_document(self, user_id, **fields) -> Document:
        with self._lock:
            now = _now()
            doc = Document(
                id=uuid4(),
                user_id=user_id,
                status=DocumentStatus.UPLOADED,
                created_at=now,
                updated_at=now,
                **fields,
            )
            self.documents[doc.id] = doc
            self.document_seq[doc.id] = next(self._seq)
            self.status_history[doc.id] = [DocumentStatus.UPLOADED]
            return doc

    def get_document(self, document_id) -> Document | None:
        with self._lock:
            return self.documents.get(document_id)

    def list_documents(self, user_id) -> list[Document]:
        with self._lock:
            docs = [d for d in self.documents.values() if d.user_id == user_id]
            return sorted(docs, key=lambda d: self.document_seq[d.id], reverse=True)

    def _apply_fields(self, doc: Document, fields: dict) -> dict:
        update = dict(fields)
        if "processing_metadata" in update:
            merged = {**doc.processing_metadata, **update["processing_metadata"]}
            update["processing_metadata"] = validate_metadata(merged, PROCESSING_METADATA_FIELDS)
        update["updated_at"] = _now()
        return update

    def update_document(self, document_id, **fields) -> Document:
        with self._lock:
            doc = self.documents.get(document_id)
            if doc is None:
                raise DocumentNotFoundError(f"Document {document_id} not found")
            doc = doc.model_copy(update=self._apply_fields(doc, fields))
            self.documents[document_id] = doc
            return doc

    def update_document_status(
        self, document_id, status, processing_error=None, **fields
    ) -> Document:
        with self._lock:
            doc = self.documents.get(document_id)
            if doc is None:
                raise DocumentNotFoundError(f"Document {document_id} not found")
            status = validate_transition(doc.status, status)
            update = self._apply_fields(doc, fields)
            update["status"] = status
            update["processing_error"] = processing_error
            if status is DocumentStatus.PROCESSED:
                update["processed_at"] = _now()
            doc = doc.model_copy(update=update)
            self.documents[document_id] = doc
            self.status_history[document_id].append(status)
            return doc

    def delete_document(self, document_id) -> bool:
        with self._lock:
            if self.documents.pop(document_id, None) is None:
                return False
            for chunk_id in [c.id for c in self.chunks.values() if c.document_id == document_id]:
                del self.chunks[chunk_id]
            for key in [k for k in self.document_tags if k[0] == document_id]:
                del self.document_tags[key]
            return True

    def insert_chunks(self, chunks: list[ChunkRecord]) -> list[ChunkRecord]:
        if self.fail_insert_chunks:
            raise RuntimeError("connection lost")
        with self._lock:
            stored = []
            for chunk in sorted(chunks, key=lambda c: c.chunk_index):
                record = chunk.model_copy(update={"id": uuid4(), "created_at": _now()})
                self.chunks[record.id] = record
                stored.append(record)
            return stored

    def get_chunks(self, document_id) -> list[ChunkRecord]:
        with self._lock:
            chunks = [c for c in self.chunks.values() if c.document_id == document_id]
            return sorted(chunks, key=lambda c: c.chunk_index)

    def add_document_tag(
        self, document_id, name, confidence, source=TagSource.AI, category=None
    ) -> DocumentTag:
        with self._lock:
            name = name.strip().lower()
            tag_id = self.tags.setdefault(name, uuid4())
            if self.tag_categories.get(name) is None:
                self.tag_categories[name] = category
            key = (document_id, name)
            current = self.document_tags.get(key)
            existing = []
            if current is not None:
                existing.append(
                    TagAssignment(name=name, confidence=current.confidence, source=current.source)
                )
            (merged,) = merge_tags(
                existing, [TagCandidate(name=name, confidence=confidence, source=source)]
            )
            link = DocumentTag(
                document_id=document_id,
                tag_id=tag_id,
                name=name,
                category=self.tag_categories[name],
                confidence=merged.confidence,
                source=merged.source,
            )
            self.document_tags[key] = link
            return link

    def get_document_tags(self, document_id) -> list[DocumentTag]:
        with self._lock:
            links = [t for (doc_id, _), t in self.document_tags.items() if doc_id == document_id]
            return sorted(links, key=lambda t: (-t.confidence, t.name))

    def update_document_auto_tags(self, document_id) -> list[str]:
        with self._lock:
            auto_tags = compute_auto_tags(self.get_document_tags(document_id))
            doc = self.documents[document_id]
            self.documents[document_id] = doc.model_copy(update={"auto_tags": auto_tags})
            return auto_tags

    def insert_search_query(
        self,
        user_id,
        query_text,
        query_embedding,
        query_type,
        similarity_threshold,
        max_results,
        search_metadata=None,
    ) -> SearchQueryRecord:
        with self._lock:
            record = SearchQueryRecord(
                id=uuid4(),
                user_id=user_id,
                query_text=query_text,
                query_type=SearchType(query_type),
                similarity_threshold=similarity_threshold,
                max_results=max_results,
                search_metadata=search_metadata or {},
                created_at=_now(),
            )
            self.search_queries[record.id] = record
            self.query_embeddings[record.id] = list(query_embedding)
            return record

    def update_search_query_results(
        self, query_id, results_count, response_time_ms, search_metadata=None
    ) -> None:
        with self._lock:
            record = self.search_queries[query_id]
            self.search_queries[query_id] = record.model_copy(
                update={
                    "results_count": results_count,
                    "response_time_ms": response_time_ms,
                    # JSONB round trip
                    "search_metadata": json.loads(json.dumps(search_metadata or {})),
                }
            )

    def insert_search_results(self, query_id, hits: list[SearchHit]) -> int:
        with self._lock:
            for rank, hit in enumerate(hits, 1):
                self.search_results.append((query_id, hit.chunk_id, hit.similarity, rank))
            return len(hits)

    def _search(self, query_embedding, user_id, similarity_threshold, max_results, keep):
        with self._lock:
            scored = []
            for chunk in self.chunks.values():
                if chunk.user_id != user_id or chunk.embedding is None:
                    continue
                doc = self.documents.get(chunk.document_id)
                if doc is None or not keep(doc):
                    continue
                similarity = cosine_similarity(chunk.embedding, query_embedding)
                if similarity > similarity_threshold:
                    scored.append((similarity, chunk, doc))
            scored.sort(key=lambda item: -item[0])
            return [
                SearchHit(
                    chunk_id=chunk.id,
                    document_id=doc.id,
                    chunk_text=chunk.chunk_text,
                    metadata=chunk.metadata,
                    similarity=similarity,
                    document_title=doc.title or doc.original_filename,
                    document_filename=doc.original_filename,
                    public_url=doc.public_url,
                    content_type=doc.content_type,
                    auto_tags=doc.auto_tags,
                    created_at=chunk.created_at,
                    rank_position=rank,
                )
                for rank, (similarity, chunk, doc) in enumerate(scored[:max_results], 1)
            ]

    def enhanced_similarity_search(
        self,
        query_embedding,
        user_id,
        similarity_threshold=0.7,
        max_results=10,
        content_types=None,
        required_tags=None,
    ) -> list[SearchHit]:
        if self.fail_enhanced:
            raise RuntimeError("function enhanced_similarity_search does not exist")

        def keep(doc: Document) -> bool:
            if content_types and doc.content_type not in content_types:
                return False
            if required_tags and not set(doc.auto_tags) & set(required_tags):
                return False
            return True

        return self._search(query_embedding, user_id, similarity_threshold, max_results, keep)

    def similarity_search(
        self, query_embedding, user_id, similarity_threshold=0.7, max_results=10
    ) -> list[SearchHit]:
        if self.fail_basic:
            raise RuntimeError("connection refused")
        return self._search(
            query_embedding, user_id, similarity_threshold, max_results, lambda doc: True
        )

    def create_conversation(self, user_id, title=None) -> Conversation:
        with self._lock:
            now = _now()
            conversation = Conversation(
                id=uuid4(), user_id=user_id, title=title, created_at=now, updated_at=now
            )
            self.conversations[conversation.id] = conversation
            return conversation

    def get_conversation(self, conversation_id) -> Conversation | None:
        with self._lock:
            return self.conversations.get(conversation_id)

    def insert_message(self, conversation_id, role, content, metadata=None) -> Message:
        with self._lock:
            message = Message(
                id=uuid4(),
                conversation_id=conversation_id,
                role=MessageRole(role),
                content=content,
                metadata=json.loads(json.dumps(metadata or {})),
                created_at=_now(),
            )
            self.messages.append(message)
            conversation = self.conversations[conversation_id]
            self.conversations[conversation_id] = conversation.model_copy(
                update={"updated_at": _now()}
            )
            return message

    def list_conversations(self, user_id) -> list[Conversation]:
        with self._lock:
            conversations = [
                c.model_copy(
                    update={"messages": [m for m in self.messages if m.conversation_id == c.id]}
                )
                for c in self.conversations.values()
                if c.user_id == user_id
            ]
            return sorted(conversations, key=lambda c: c.updated_at, reverse=True)


VISION_REPLY = json.dumps(
    {
        "extracted_text": "SALE 50% OFF",
        "main_description": "A red shop sign above a storefront",
        "objects": ["sign", "storefront"],
        "scene_type": "urban",
        "activities": ["advertising"],
        "tags": ["Sign", "Sale", "red", "x"],
        "categories": ["Retail", "signage"],
        "confidence": 0.9,
    }
)

SUMMARY_REPLY = json.dumps(
    {
        "title": "Quarterly Report",
        "summary": "Revenue grew across all regions.",
        "key_topics": ["revenue", "regions"],
        "entities": [{"name": "Acme Corp", "type": "organization"}],
        "language": "en",
        "estimated_reading_time": 3,
    }
)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def settings():
    return Settings(chunk_size=200, chunk_overlap=40, max_upload_size=1024 * 1024)


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def user(store):
    return store.get_or_create_user("session-abc")


@pytest.fixture
def make_pipeline(store, blob_store, embedder, settings, executor):
    def _make(vision_reply=VISION_REPLY, completion_client=None, embedder_override=None):
        return IngestionPipeline(
            store,
            blob_store,
            Extractor(vision_client=FakeVisionClient(vision_reply)),
            embedder_override or embedder,
            completion_client=completion_client,
            settings=settings,
            executor=executor,
        )

    return _make
