from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    PROCESSED = "processed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.PROCESSED, DocumentStatus.ERROR)


# Forward-only lifecycle; image and text files go chunking -> processed
# because their embeddings are computed while the chunks are created.
ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.UPLOADED: frozenset(
        {DocumentStatus.PROCESSING, DocumentStatus.ERROR}
    ),
    DocumentStatus.PROCESSING: frozenset(
        {DocumentStatus.CHUNKING, DocumentStatus.ERROR}
    ),
    DocumentStatus.CHUNKING: frozenset(
        {DocumentStatus.EMBEDDING, DocumentStatus.PROCESSED, DocumentStatus.ERROR}
    ),
    DocumentStatus.EMBEDDING: frozenset(
        {DocumentStatus.PROCESSED, DocumentStatus.ERROR}
    ),
    DocumentStatus.PROCESSED: frozenset(),
    DocumentStatus.ERROR: frozenset(),
}


class InvalidStatusTransitionError(ValueError):
    """Raised when a document status change would move backwards or leave a terminal state."""

    pass


class DocumentNotFoundError(LookupError):
    pass


class UserNotFoundError(LookupError):
    pass


def validate_transition(
    current: DocumentStatus | str, new: DocumentStatus | str
) -> DocumentStatus:
    """Check that ``current -> new`` is a legal lifecycle step.

    Returns:
        The new status as a DocumentStatus.

    Raises:
        InvalidStatusTransitionError: If the step is not allowed.
    """
    current = DocumentStatus(current)
    new = DocumentStatus(new)
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(
            f"Invalid status transition: {current.value} -> {new.value}"
        )
    return new


class FileCategory(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    DOCUMENT = "document"

    @classmethod
    def from_mime_type(cls, mime_type: str | None) -> "FileCategory":
        mime_type = (mime_type or "").lower()
        if mime_type.startswith("image/"):
            return cls.IMAGE
        if mime_type == "text/plain":
            return cls.TEXT
        return cls.DOCUMENT


class SearchType(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class TagSource(str, Enum):
    AI = "ai"
    USER = "user"
    OCR = "ocr"
    VISION = "vision"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# Recognized metadata keys and their types. Unknown keys pass through untouched.
PROCESSING_METADATA_FIELDS: dict[str, type | tuple[type, ...]] = {
    "is_image": bool,
    "requires_ocr": bool,
    "original_type": str,
    "vision_analysis_complete": bool,
    "analysis_timestamp": str,
    "summary": dict,
    "chunk_count": int,
    "page_count": int,
}

CHUNK_METADATA_FIELDS: dict[str, type | tuple[type, ...]] = {
    "start_index": int,
    "end_index": int,
    "type": str,
    "content_type": str,
    "filename": str,
    "file_type": str,
    "document_id": str,
    "extracted_text": str,
    "description": str,
    "scene_type": str,
    "objects": list,
    "tags": list,
}


def validate_metadata(
    metadata: dict[str, Any] | None,
    allowed: dict[str, type | tuple[type, ...]],
) -> dict[str, Any]:
    """Type-check recognized metadata keys, passing unknown keys through.

    Raises:
        ValueError: If a recognized key holds a value of the wrong type.
    """
    metadata = dict(metadata or {})
    for key, expected in allowed.items():
        value = metadata.get(key)
        if value is not None and not isinstance(value, expected):
            raise ValueError(
                f"metadata field '{key}' must be {expected}, got {type(value).__name__}"
            )
    return metadata


class User(BaseModel):
    id: UUID
    session_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_activity: datetime | None = None


class Document(BaseModel):
    id: UUID
    user_id: UUID
    filename: str
    original_filename: str
    storage_path: str
    public_url: str | None = None
    file_type: FileCategory
    file_size: int
    mime_type: str | None = None
    status: DocumentStatus = DocumentStatus.UPLOADED
    processing_error: str | None = None
    extracted_text: str | None = None
    title: str | None = None
    description: str | None = None
    content_type: str | None = None
    language: str | None = "en"
    page_count: int | None = None
    word_count: int | None = None
    character_count: int | None = None
    confidence_score: float | None = None
    processing_metadata: dict[str, Any] = Field(default_factory=dict)
    image_analysis: dict[str, Any] = Field(default_factory=dict)
    auto_tags: list[str] = Field(default_factory=list)
    chunk_size: int = 1000
    chunk_overlap: int = 200
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None

    @field_validator("processing_metadata", mode="before")
    @classmethod
    def validate_processing_metadata(cls, v: dict | None) -> dict:
        return validate_metadata(v, PROCESSING_METADATA_FIELDS)

    @field_validator("image_analysis", mode="before")
    @classmethod
    def default_image_analysis(cls, v: dict | None) -> dict:
        return v or {}

    @field_validator("auto_tags", mode="before")
    @classmethod
    def default_auto_tags(cls, v: list | None) -> list:
        return v or []


class ChunkRecord(BaseModel):
    id: UUID | None = None
    document_id: UUID
    user_id: UUID
    chunk_index: int = Field(ge=0)
    chunk_text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    word_count: int | None = None
    character_count: int | None = None
    embedding: list[float] | None = None
    created_at: datetime | None = None
    embedded_at: datetime | None = None

    @field_validator("metadata", mode="before")
    @classmethod
    def validate_chunk_metadata(cls, v: dict | None) -> dict:
        return validate_metadata(v, CHUNK_METADATA_FIELDS)

    @field_validator("embedding", mode="before")
    @classmethod
    def coerce_embedding(cls, v: Any) -> list[float] | None:
        # pgvector hands back numpy arrays
        if v is None:
            return None
        return [float(x) for x in v]


class Tag(BaseModel):
    id: UUID
    name: str
    category: str | None = None
    created_at: datetime | None = None


class DocumentTag(BaseModel):
    document_id: UUID
    tag_id: UUID
    name: str
    category: str | None = None
    confidence: float = Field(ge=0, le=1)
    source: TagSource = TagSource.AI


class SearchQueryRecord(BaseModel):
    id: UUID
    user_id: UUID
    query_text: str
    query_type: SearchType = SearchType.SEMANTIC
    similarity_threshold: float
    max_results: int
    results_count: int = 0
    response_time_ms: int | None = None
    search_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class SearchHit(BaseModel):
    chunk_id: UUID
    document_id: UUID
    chunk_text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float
    document_title: str | None = None
    document_filename: str | None = None
    public_url: str | None = None
    content_type: str | None = None
    auto_tags: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    rank_position: int | None = None

    @field_validator("auto_tags", mode="before")
    @classmethod
    def default_auto_tags(cls, v: list | None) -> list:
        return v or []


class SearchResultRecord(BaseModel):
    search_query_id: UUID
    chunk_id: UUID
    similarity_score: float
    rank_position: int = Field(ge=1)


class Message(BaseModel):
    id: UUID
    conversation_id: UUID
    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class Conversation(BaseModel):
    id: UUID
    user_id: UUID
    title: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    messages: list[Message] = Field(default_factory=list)
