"""Per-MIME-type loaders that turn uploaded document bytes into text."""

from typing import Any, Callable

import fitz  # PyMuPDF
from pydantic import BaseModel, Field

from ..logger import logger

# Threshold for detecting garbage text (corrupted font encodings)
GARBAGE_CONTROL_CHAR_RATIO = 0.1  # >10% control chars = garbage


class LoadedDocument(BaseModel):
    """Text pulled out of a document plus whatever the loader learned about it."""

    text: str
    page_count: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


DocumentLoader = Callable[[bytes], LoadedDocument]


def _is_garbage_text(text: str) -> bool:
    """Detect if extracted text is binary garbage from corrupted font encodings."""
    if not text or len(text) < 20:
        return False
    control_chars = sum(1 for c in text if ord(c) < 32 and c not in "\n\t\r ")
    return control_chars / len(text) > GARBAGE_CONTROL_CHAR_RATIO


def load_pdf(data: bytes) -> LoadedDocument:
    """Extract page text from a PDF with PyMuPDF.

    Pages whose text looks like corrupted-encoding garbage are skipped.
    """
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        pages = []
        skipped_pages = []
        for page_num, page in enumerate(doc):
            # PostgreSQL cannot store NUL (0x00) in text fields
            text = page.get_text("text").replace("\x00", "")
            if _is_garbage_text(text):
                skipped_pages.append(page_num + 1)
                logger.warn("garbage text detected, skipping page", page_number=page_num + 1)
                continue
            if text.strip():
                pages.append(text.strip())

        metadata = {
            key: value
            for key, value in (doc.metadata or {}).items()
            if key in ("title", "author", "creationDate") and value
        }
        if skipped_pages:
            metadata["skipped_pages"] = skipped_pages

        logger.info(
            "pdf parsed successfully",
            total_pages=doc.page_count,
            text_pages=len(pages),
            skipped_pages=len(skipped_pages),
        )
        return LoadedDocument(
            text="\n\n".join(pages),
            page_count=doc.page_count,
            metadata=metadata,
        )
    finally:
        doc.close()


def load_text(data: bytes) -> LoadedDocument:
    return LoadedDocument(text=data.decode("utf-8", errors="replace"))


class LoaderRegistry:
    """Maps MIME types to loaders."""

    def __init__(self, loaders: dict[str, DocumentLoader] | None = None):
        self._loaders: dict[str, DocumentLoader] = {}
        for mime_type, loader in (loaders or {}).items():
            self.register(mime_type, loader)

    def register(self, mime_type: str, loader: DocumentLoader) -> None:
        self._loaders[mime_type.lower()] = loader

    def get(self, mime_type: str | None) -> DocumentLoader | None:
        # Drop parameters such as "; charset=utf-8"
        base_type = (mime_type or "").split(";")[0].strip().lower()
        return self._loaders.get(base_type)

    @property
    def supported_types(self) -> list[str]:
        return sorted(self._loaders)


def default_loader_registry() -> LoaderRegistry:
    return LoaderRegistry(
        {
            "application/pdf": load_pdf,
            "text/markdown": load_text,
            "text/csv": load_text,
            "application/json": load_text,
        }
    )
