from .answers import AnswerSynthesisError, AnswerSynthesizer, SearchAnswer
from .chunking import ChunkData, split_text
from .conversations import (
    ChatService,
    ChatTurn,
    ConversationNotFoundError,
    InvalidMessageError,
)
from .database import PgVectorStore
from .embeddings import EmbeddingClient, EmbeddingError, EmbeddingResult
from .extraction import (
    ExtractionError,
    Extractor,
    FileUpload,
    UnsupportedFileTypeError,
)
from .ingestion import IngestionPipeline, QueuedDocument, UploadValidationError
from .models import (
    ChunkRecord,
    Conversation,
    Document,
    DocumentNotFoundError,
    DocumentStatus,
    InvalidStatusTransitionError,
    Message,
    SearchHit,
    SearchType,
    UserNotFoundError,
)
from .search import InvalidQueryError, SearchEngine, SearchError, SearchOptions, SearchResponse
from .storage import LocalBlobStore, check_storage
from .structured import AnthropicCompletionClient, DocumentSummary, StructuredOutputError
from .tagging import Tagger
from .vision import ImageAnalysis, OpenAIVisionClient

__all__ = [
    "AnswerSynthesisError",
    "AnswerSynthesizer",
    "AnthropicCompletionClient",
    "ChatService",
    "ChatTurn",
    "ChunkData",
    "ChunkRecord",
    "Conversation",
    "ConversationNotFoundError",
    "Document",
    "DocumentNotFoundError",
    "DocumentStatus",
    "DocumentSummary",
    "EmbeddingClient",
    "EmbeddingError",
    "EmbeddingResult",
    "ExtractionError",
    "Extractor",
    "FileUpload",
    "ImageAnalysis",
    "IngestionPipeline",
    "InvalidMessageError",
    "InvalidQueryError",
    "InvalidStatusTransitionError",
    "LocalBlobStore",
    "Message",
    "OpenAIVisionClient",
    "PgVectorStore",
    "QueuedDocument",
    "SearchAnswer",
    "SearchEngine",
    "SearchError",
    "SearchHit",
    "SearchOptions",
    "SearchResponse",
    "SearchType",
    "StructuredOutputError",
    "Tagger",
    "UnsupportedFileTypeError",
    "UploadValidationError",
    "UserNotFoundError",
    "check_storage",
    "split_text",
]
