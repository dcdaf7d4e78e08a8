"""Convert uploaded files into normalized text plus structured metadata."""

import base64
import time
from typing import Any, Protocol

from pydantic import BaseModel, Field

from ..logger import logger
from .loaders import LoaderRegistry, default_loader_registry
from .models import FileCategory
from .vision import (
    VISION_PROMPT,
    ImageAnalysis,
    build_searchable_content,
    parse_vision_response,
)

DEFAULT_IMAGE_CONFIDENCE = 0.8


class UnsupportedFileTypeError(ValueError):
    """Raised when no loader is registered for a file's MIME type."""

    pass


class ExtractionError(RuntimeError):
    """Raised when a supported file yields no usable content."""

    pass


class VisionClient(Protocol):
    def analyze(self, image_url: str, prompt: str = VISION_PROMPT) -> str: ...


class FileUpload(BaseModel):
    """An uploaded file held in memory."""

    filename: str
    mime_type: str = "application/octet-stream"
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def category(self) -> FileCategory:
        return FileCategory.from_mime_type(self.mime_type)


class ExtractionResult(BaseModel):
    text: str
    category: FileCategory
    title: str | None = None
    description: str | None = None
    confidence: float | None = None
    page_count: int | None = None
    # Context copied onto every chunk of the document
    metadata: dict[str, Any] = Field(default_factory=dict)
    image_analysis: ImageAnalysis | None = None


def _data_url(upload: FileUpload) -> str:
    encoded = base64.b64encode(upload.data).decode("ascii")
    return f"data:{upload.mime_type};base64,{encoded}"


class Extractor:
    """Dispatches extraction on the upload's MIME type.

    Images go through the vision model, ``text/plain`` is decoded directly
    and everything else goes through the loader registry. The extractor
    only transforms; persisting the result is the pipeline's job.
    """

    def __init__(
        self,
        vision_client: VisionClient | None = None,
        loaders: LoaderRegistry | None = None,
    ):
        self.vision_client = vision_client
        self.loaders = loaders or default_loader_registry()

    def extract(self, upload: FileUpload, image_url: str | None = None) -> ExtractionResult:
        """Extract text from an upload.

        Args:
            upload: The uploaded file.
            image_url: URL the vision model can fetch the image from. When
                omitted the image is inlined as a data URL.

        Raises:
            UnsupportedFileTypeError: If the MIME type has no loader.
            ExtractionError: If the file produced no text.
        """
        start = time.perf_counter()
        category = upload.category

        if category is FileCategory.IMAGE:
            result = self._extract_image(upload, image_url or _data_url(upload))
        elif category is FileCategory.TEXT:
            result = self._extract_text(upload)
        else:
            result = self._extract_document(upload)

        if not result.text.strip():
            raise ExtractionError(f"No text content could be extracted from {upload.filename}")

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "extraction completed",
            file_name=upload.filename,
            mime_type=upload.mime_type,
            category=category.value,
            characters=len(result.text),
            duration_ms=round(duration_ms, 2),
        )
        return result

    def _extract_image(self, upload: FileUpload, image_url: str) -> ExtractionResult:
        if self.vision_client is None:
            raise ExtractionError("Image analysis is not configured")

        reply = self.vision_client.analyze(image_url, VISION_PROMPT)
        analysis = parse_vision_response(reply)
        searchable_content = build_searchable_content(analysis)

        if analysis.extracted_text:
            title = analysis.extracted_text[:100]
        else:
            title = f"Image: {analysis.main_description[:100] or 'Analyzed Image'}"

        return ExtractionResult(
            text=searchable_content,
            category=FileCategory.IMAGE,
            title=title,
            description=analysis.main_description,
            confidence=(
                analysis.confidence
                if analysis.confidence is not None
                else DEFAULT_IMAGE_CONFIDENCE
            ),
            metadata={
                "type": "image",
                "content_type": "image",
                "extracted_text": analysis.extracted_text,
                "description": analysis.main_description,
                "scene_type": analysis.scene_type,
                "objects": analysis.objects,
                "tags": analysis.tags,
            },
            image_analysis=analysis,
        )

    def _extract_text(self, upload: FileUpload) -> ExtractionResult:
        return ExtractionResult(
            text=upload.data.decode("utf-8", errors="replace"),
            category=FileCategory.TEXT,
            metadata={"type": "text", "filename": upload.filename},
        )

    def _extract_document(self, upload: FileUpload) -> ExtractionResult:
        loader = self.loaders.get(upload.mime_type)
        if loader is None:
            raise UnsupportedFileTypeError(f"File type {upload.mime_type} not supported yet")

        loaded = loader(upload.data)
        return ExtractionResult(
            text=loaded.text,
            category=FileCategory.DOCUMENT,
            title=loaded.metadata.get("title"),
            page_count=loaded.page_count,
            metadata={
                "filename": upload.filename,
                "file_type": upload.mime_type,
            },
        )
