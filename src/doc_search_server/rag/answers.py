"""Structured answers synthesized from search results."""

import time

from pydantic import BaseModel, Field

from ..logger import logger
from .models import SearchHit
from .structured import (
    CompletionClient,
    StructuredOutputError,
    format_instructions,
    parse_structured,
)

MAX_FOLLOW_UP_QUESTIONS = 3
MAX_EXCERPT_CHARS = 200


class AnswerSynthesisError(RuntimeError):
    """Raised when an answer could not be generated or parsed."""

    pass


class AnswerSource(BaseModel):
    chunk_id: str
    document_title: str
    relevance_score: float = Field(ge=0, le=1)
    excerpt: str = Field(max_length=MAX_EXCERPT_CHARS)


class SearchAnswer(BaseModel):
    answer: str = Field(description="Comprehensive answer to the user's question")
    confidence: float = Field(ge=0, le=1, description="Confidence in the answer")
    sources: list[AnswerSource] = Field(default_factory=list)
    follow_up_questions: list[str] = Field(
        default_factory=list, max_length=MAX_FOLLOW_UP_QUESTIONS
    )


def build_context(hits: list[SearchHit]) -> str:
    return "\n\n".join(f"[{i}] {hit.chunk_text}" for i, hit in enumerate(hits, 1))


class AnswerSynthesizer:
    """Answers a question from the chunks a search returned."""

    def __init__(self, completion_client: CompletionClient):
        self.completion_client = completion_client

    def answer(self, question: str, hits: list[SearchHit]) -> SearchAnswer:
        """Generate a structured answer grounded in hits.

        Raises:
            AnswerSynthesisError: If the completion fails, does not parse, or
                cites more sources than there are hits.
        """
        start = time.perf_counter()
        prompt = f"""Based on the following context, answer the user's question comprehensively.

{format_instructions(SearchAnswer)}

Context:
{build_context(hits) or "No relevant context found."}

Question: {question}"""

        try:
            reply = self.completion_client.complete(prompt)
            answer = parse_structured(reply, SearchAnswer)
        except StructuredOutputError as e:
            logger.error("answer parse failed", question_length=len(question), error=str(e))
            raise AnswerSynthesisError(f"Failed to parse answer: {e}") from e
        except Exception as e:
            logger.error("answer generation failed", question_length=len(question), error=str(e))
            raise AnswerSynthesisError(f"Failed to generate answer: {e}") from e

        if len(answer.sources) > len(hits):
            raise AnswerSynthesisError(
                f"Answer cites {len(answer.sources)} sources but only {len(hits)} results were given"
            )

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "answer generated",
            question_length=len(question),
            hits_count=len(hits),
            sources_count=len(answer.sources),
            confidence=answer.confidence,
            duration_ms=round(duration_ms, 2),
        )
        return answer
