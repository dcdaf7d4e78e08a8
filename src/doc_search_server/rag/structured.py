"""Schema-constrained completions and the document summarizer."""

import json
import os
import time
from typing import Literal, Protocol, TypeVar

from anthropic import Anthropic
from pydantic import BaseModel, Field, ValidationError

from ..logger import logger
from .vision import find_json_object

DEFAULT_COMPLETION_MODEL = "claude-sonnet-4-20250514"
SUMMARY_INPUT_CHARS = 4000

ModelT = TypeVar("ModelT", bound=BaseModel)


class StructuredOutputError(ValueError):
    """Raised when a completion does not match the requested schema."""

    pass


class CompletionClient(Protocol):
    def complete(self, prompt: str) -> str: ...


class AnthropicCompletionClient:
    """Completion capability backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_COMPLETION_MODEL,
        max_tokens: int = 2048,
    ):
        api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError(
                "Anthropic API key required: provide api_key or set ANTHROPIC_API_KEY"
            )
        self._anthropic = Anthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens

    def complete(self, prompt: str) -> str:
        start = time.perf_counter()
        response = self._anthropic.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        duration_ms = (time.perf_counter() - start) * 1000

        if not response.content:
            raise ValueError("Empty response from Claude API")
        text = response.content[0].text

        logger.info(
            "completion generated",
            model=self.model,
            prompt_length=len(prompt),
            response_length=len(text),
            duration_ms=round(duration_ms, 2),
        )
        return text


def format_instructions(model_cls: type[BaseModel]) -> str:
    """Instructions telling the model to reply with JSON matching model_cls."""
    schema = json.dumps(model_cls.model_json_schema(), indent=2)
    return (
        "Respond with a single JSON object that conforms to the JSON schema below. "
        "Do not include any text outside the JSON object.\n\n"
        f"```json\n{schema}\n```"
    )


def parse_structured(text: str, model_cls: type[ModelT]) -> ModelT:
    """Validate the first JSON object in a completion against model_cls.

    Raises:
        StructuredOutputError: If there is no JSON object or it does not validate.
    """
    obj = find_json_object(text)
    if obj is None:
        raise StructuredOutputError(f"No JSON object found in {model_cls.__name__} response")
    try:
        return model_cls.model_validate(obj)
    except ValidationError as e:
        raise StructuredOutputError(f"Invalid {model_cls.__name__} response: {e}") from e


class Entity(BaseModel):
    name: str
    type: Literal["person", "organization", "location", "date", "concept"]
    context: str | None = None


class DocumentSummary(BaseModel):
    title: str = Field(description="A descriptive title for the document")
    summary: str = Field(description="Comprehensive summary of the document content")
    key_topics: list[str] = Field(description="Main topics discussed in the document")
    entities: list[Entity] = Field(default_factory=list)
    language: str = Field(description="Primary language of the document")
    estimated_reading_time: int = Field(ge=0, description="Estimated reading time in minutes")


def summarize_document(client: CompletionClient, text: str) -> DocumentSummary:
    """Summarize the opening of a document into a DocumentSummary."""
    prompt = f"""Analyze this document and create a comprehensive summary.

{format_instructions(DocumentSummary)}

Document content:
{text[:SUMMARY_INPUT_CHARS]}"""

    return parse_structured(client.complete(prompt), DocumentSummary)
