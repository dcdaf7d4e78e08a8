"""Tag normalization, merging and persistence for documents."""

from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel, Field

from ..logger import logger
from .models import DocumentTag, TagSource
from .vision import ImageAnalysis

AUTO_TAG_MIN_CONFIDENCE = 0.3
DEFAULT_TAG_CONFIDENCE = 0.8
CATEGORY_CONFIDENCE = 0.9
MAX_ANALYSIS_TAGS = 20
MAX_ANALYSIS_CATEGORIES = 5


class TagCandidate(BaseModel):
    """A tag proposed for a document, before it is persisted."""

    name: str
    confidence: float = Field(ge=0, le=1)
    source: TagSource = TagSource.AI
    category: str | None = None


class TagAssignment(BaseModel):
    """A tag attached to a document, as seen by the merge rules."""

    name: str
    confidence: float = Field(ge=0, le=1)
    source: TagSource


class TagStore(Protocol):
    def add_document_tag(
        self,
        document_id: UUID,
        name: str,
        confidence: float,
        source: TagSource,
        category: str | None = None,
    ) -> DocumentTag: ...

    def update_document_auto_tags(self, document_id: UUID) -> list[str]: ...


def normalize_tag_name(value: Any) -> str | None:
    """Strip and lower-case a tag name; None if it is not a usable name."""
    if not isinstance(value, str):
        return None
    name = value.strip().lower()
    return name if len(name) > 1 else None


def tags_from_analysis(analysis: ImageAnalysis) -> list[TagCandidate]:
    """Build vision tag candidates from an image analysis.

    Tags get the analysis confidence, categories a fixed higher one. A name
    that appears as both keeps its highest confidence.
    """
    tag_confidence = (
        analysis.confidence
        if analysis.confidence is not None
        else DEFAULT_TAG_CONFIDENCE
    )

    candidates: dict[str, TagCandidate] = {}

    def offer(raw: Any, confidence: float, category: str | None) -> None:
        name = normalize_tag_name(raw)
        if name is None:
            return
        current = candidates.get(name)
        if current is None or confidence > current.confidence:
            candidates[name] = TagCandidate(
                name=name,
                confidence=confidence,
                source=TagSource.VISION,
                category=category,
            )

    for tag in analysis.tags[:MAX_ANALYSIS_TAGS]:
        offer(tag, tag_confidence, None)
    for category in analysis.categories[:MAX_ANALYSIS_CATEGORIES]:
        offer(category, CATEGORY_CONFIDENCE, "category")

    return list(candidates.values())


def merge_tags(
    existing: list[TagAssignment], incoming: list[TagCandidate]
) -> list[TagAssignment]:
    """Apply incoming candidates to existing assignments.

    Mirrors the store's upsert: confidence becomes the maximum of the two
    readings and the source follows the strictly higher reading. Merging
    the same candidates twice leaves the result unchanged.
    """
    merged = {a.name: a for a in existing}
    for candidate in incoming:
        name = normalize_tag_name(candidate.name)
        if name is None:
            continue
        current = merged.get(name)
        if current is None or candidate.confidence > current.confidence:
            merged[name] = TagAssignment(
                name=name, confidence=candidate.confidence, source=candidate.source
            )
    return list(merged.values())


def compute_auto_tags(assignments: list[TagAssignment | DocumentTag]) -> list[str]:
    """Names with confidence >= 0.3, most confident first, ties by name."""
    eligible = [a for a in assignments if a.confidence >= AUTO_TAG_MIN_CONFIDENCE]
    eligible.sort(key=lambda a: (-a.confidence, a.name))
    return [a.name for a in eligible]


class Tagger:
    """Persists tag candidates and keeps a document's auto-tags current."""

    def __init__(self, store: TagStore):
        self.store = store

    def apply(self, document_id: UUID, candidates: list[TagCandidate]) -> list[str]:
        """Upsert every candidate onto the document and recompute its auto-tags.

        Returns:
            The document's auto-tags after the update.
        """
        applied = 0
        for candidate in candidates:
            name = normalize_tag_name(candidate.name)
            if name is None:
                continue
            self.store.add_document_tag(
                document_id,
                name,
                candidate.confidence,
                candidate.source,
                category=candidate.category,
            )
            applied += 1

        auto_tags = self.store.update_document_auto_tags(document_id)
        logger.info(
            "document tags applied",
            document_id=str(document_id),
            tags_count=applied,
            auto_tags_count=len(auto_tags),
        )
        return auto_tags
