"""Image analysis through a vision model and parsing of its replies.

Replies are parsed in two tiers: the first well-formed JSON object in the
text is validated into an ImageAnalysis; if there is none, labelled
``**section:**`` blocks are pulled out with regular expressions and the
analysis gets a lowered confidence.
"""

import json
import os
import re
import time
from typing import Any, Iterable

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..logger import logger

DEFAULT_VISION_MODEL = "gpt-4o-mini"
FALLBACK_CONFIDENCE = 0.7
FALLBACK_TAGS = ["image", "vision-analyzed"]
FALLBACK_CATEGORIES = ["general"]

VISION_PROMPT = """Analyze this image comprehensively and provide structured information. Be thorough and accurate.

Return your response in this exact JSON format:
{
  "extracted_text": "Any text visible in the image transcribed exactly",
  "main_description": "Detailed description of what's shown in the image",
  "objects": ["list", "of", "visible", "objects"],
  "people": ["descriptions", "of", "people", "if", "any"],
  "scene_type": "indoor/outdoor/nature/urban/etc",
  "colors": ["dominant", "colors"],
  "mood": "emotional tone or mood of the image",
  "activities": ["what", "is", "happening"],
  "tags": ["comprehensive", "list", "of", "relevant", "tags"],
  "categories": ["primary", "categories", "this", "image", "belongs", "to"],
  "text_type": "document/sign/handwriting/printed/none",
  "confidence": 0.95,
  "searchable_content": "Combined text optimized for search including all relevant information"
}"""


class VisionError(RuntimeError):
    """Raised when the vision model returns nothing usable."""

    pass


class VisionParseError(ValueError):
    """Raised when a vision reply holds no valid JSON analysis."""

    pass


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if isinstance(item, (str, int, float))]
    return []


class ImageAnalysis(BaseModel):
    """Structured description of an image. Unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow")

    extracted_text: str = ""
    main_description: str = ""
    objects: list[str] = Field(default_factory=list)
    people: list[str] = Field(default_factory=list)
    scene_type: str = ""
    colors: list[str] = Field(default_factory=list)
    mood: str = ""
    activities: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    text_type: str = ""
    confidence: float | None = None
    searchable_content: str = ""
    used_fallback: bool = Field(default=False, exclude=True)

    @field_validator(
        "objects", "people", "colors", "activities", "tags", "categories", mode="before"
    )
    @classmethod
    def coerce_lists(cls, v: Any) -> list[str]:
        return _as_str_list(v)

    @field_validator(
        "extracted_text",
        "main_description",
        "scene_type",
        "mood",
        "text_type",
        "searchable_content",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float | None:
        if v is None or isinstance(v, bool):
            return None
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return min(max(value, 0.0), 1.0)


ANALYSIS_KEYS = frozenset(ImageAnalysis.model_fields) - {"used_fallback"}


def find_json_object(text: str, keys: Iterable[str] | None = None) -> dict | None:
    """Return the first well-formed JSON object embedded in text, if any.

    When keys is given, objects sharing none of them are skipped. A reply
    cut off mid-object would otherwise yield one of its nested values.
    """
    wanted = set(keys) if keys is not None else None
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", text):
        try:
            obj, _ = decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue
        if wanted is None or wanted.intersection(obj):
            return obj
    return None


def parse_strict(text: str) -> ImageAnalysis:
    """Parse a vision reply that embeds a JSON object.

    Raises:
        VisionParseError: If there is no JSON object or it fails validation.
    """
    obj = find_json_object(text, ANALYSIS_KEYS)
    if obj is None:
        raise VisionParseError("No JSON found in response")
    try:
        return ImageAnalysis.model_validate(obj)
    except ValidationError as e:
        raise VisionParseError(f"Invalid analysis JSON: {e}") from e


def extract_section(text: str, section_name: str) -> str:
    """Pull the body of a ``**section_name:**`` block out of free text.

    Underscores in the name also match spaces, so ``main_description``
    finds ``**Main Description:**``. The body runs until the next
    bold label or the end of the text.
    """
    name = re.escape(section_name).replace("_", "[_ ]")
    pattern = re.compile(
        rf"\*\*{name}:\*\*\s*(.*?)(?=\*\*[A-Za-z_ ]+:\*\*|\Z)",
        re.IGNORECASE | re.DOTALL,
    )
    match = pattern.search(text)
    return match.group(1).strip() if match else ""


def parse_fallback(text: str) -> ImageAnalysis:
    """Best-effort analysis built from labelled sections of a non-JSON reply."""
    return ImageAnalysis(
        extracted_text=extract_section(text, "extracted_text"),
        main_description=extract_section(text, "main_description") or text.strip(),
        tags=list(FALLBACK_TAGS),
        categories=list(FALLBACK_CATEGORIES),
        confidence=FALLBACK_CONFIDENCE,
        searchable_content=text.strip(),
        used_fallback=True,
    )


def parse_vision_response(text: str) -> ImageAnalysis:
    """Parse a vision reply, falling back to section extraction."""
    try:
        return parse_strict(text)
    except VisionParseError as e:
        logger.warn(
            "failed to parse vision json, falling back to text parsing",
            error=str(e),
            response_length=len(text),
        )
        return parse_fallback(text)


def build_searchable_content(analysis: ImageAnalysis) -> str:
    """Combine the analysis into the labelled text that gets chunked and embedded."""
    return f"""{analysis.extracted_text}

Description: {analysis.main_description}

Objects: {", ".join(analysis.objects)}

Scene: {analysis.scene_type}

Activities: {", ".join(analysis.activities)}

Tags: {", ".join(analysis.tags)}""".strip()


class OpenAIVisionClient:
    """Vision capability backed by an OpenAI multimodal chat model."""

    def __init__(self, api_key: str | None = None, model: str = DEFAULT_VISION_MODEL):
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError(
                "OpenAI API key required: provide api_key or set OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=api_key)
        self.model = model

    def analyze(self, image_url: str, prompt: str = VISION_PROMPT) -> str:
        """Ask the model about an image and return its raw reply text."""
        start = time.perf_counter()
        response = self._client.chat.completions.create(
            model=self.model,
            temperature=0.1,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
        )
        duration_ms = (time.perf_counter() - start) * 1000

        if not response.choices or not response.choices[0].message.content:
            raise VisionError("Empty response from vision model")
        content = response.choices[0].message.content

        logger.info(
            "vision analysis completed",
            model=self.model,
            response_length=len(content),
            duration_ms=round(duration_ms, 2),
        )
        return content
