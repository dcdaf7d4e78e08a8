"""Embedding generation client for OpenAI embedding models."""

import os
import time
from dataclasses import dataclass, field

from openai import APIStatusError, OpenAI, RateLimitError

from ..logger import logger

DEFAULT_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536
MAX_TOKENS_PER_BATCH = 100_000
MAX_RETRIES = 3
INITIAL_RETRY_DELAY_SECONDS = 1


class EmbeddingError(RuntimeError):
    """Raised when an embedding could not be produced."""

    pass


def estimate_tokens(text: str) -> int:
    """Estimate token count for a text string.

    Uses the approximation of 4 characters per token.
    """
    return len(text) // 4


@dataclass
class EmbeddingResult:
    """Result of embedding generation with support for partial failures.

    Attributes:
        embeddings: List of embedding vectors. None for texts that failed.
        failed_indices: Indices of texts that failed to embed.
        errors: Mapping from failed index to error message.
    """

    embeddings: list[list[float] | None] = field(default_factory=list)
    failed_indices: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return len(self.failed_indices) == 0

    @property
    def success_count(self) -> int:
        return len(self.embeddings) - len(self.failed_indices)

    @property
    def failure_count(self) -> int:
        return len(self.failed_indices)

    @property
    def first_failure(self) -> int | None:
        """Lowest failed index, or None when everything succeeded."""
        return min(self.failed_indices) if self.failed_indices else None


class EmbeddingClient:
    """Client for generating embeddings using OpenAI's API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
    ):
        """Initialize the embedding client.

        Args:
            api_key: OpenAI API key. If not provided, uses OPENAI_API_KEY env var.
            model: Embedding model name.
            dimensions: Expected vector length; vectors of any other length
                are treated as failures.
        """
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self._api_key:
            raise ValueError(
                "OpenAI API key required: provide api_key or set OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=self._api_key)
        self.model = model
        self.dimensions = dimensions

    def embed_one(self, text: str) -> list[float]:
        """Generate the embedding for a single text.

        Raises:
            EmbeddingError: If embedding generation fails after retries.
        """
        result = self.embed_many([text])
        if result.failed_indices:
            raise EmbeddingError(f"Embedding generation failed: {result.errors[0]}")
        return result.embeddings[0]

    def embed_many(self, texts: list[str]) -> EmbeddingResult:
        """Generate embeddings for a batch of texts.

        Batches requests to stay within token limits and retries rate limit
        and server errors with exponential backoff. Failures are reported
        per text instead of raised, and a failing batch never touches the
        embeddings already computed for earlier batches.

        Returns:
            EmbeddingResult whose order matches the input texts.
        """
        if not texts:
            return EmbeddingResult()

        batches = self._split_into_batches(texts)
        batch_indices = self._get_batch_indices(batches)

        result = EmbeddingResult(embeddings=[None] * len(texts))

        for batch_idx, (batch, indices) in enumerate(zip(batches, batch_indices)):
            batch_result = self._generate_batch_with_retry(
                batch, batch_idx, len(batches)
            )

            for i, embedding in zip(indices, batch_result["embeddings"]):
                result.embeddings[i] = embedding

            if batch_result["error"]:
                for i in indices:
                    result.failed_indices.append(i)
                    result.errors[i] = batch_result["error"]

        return result

    def _split_into_batches(self, texts: list[str]) -> list[list[str]]:
        batches = []
        current_batch = []
        current_tokens = 0

        for text in texts:
            text_tokens = estimate_tokens(text)

            # A text over the limit gets a batch of its own
            if text_tokens >= MAX_TOKENS_PER_BATCH:
                if current_batch:
                    batches.append(current_batch)
                    current_batch = []
                    current_tokens = 0
                batches.append([text])
                continue

            if current_tokens + text_tokens > MAX_TOKENS_PER_BATCH:
                batches.append(current_batch)
                current_batch = [text]
                current_tokens = text_tokens
            else:
                current_batch.append(text)
                current_tokens += text_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def _get_batch_indices(self, batches: list[list[str]]) -> list[list[int]]:
        batch_indices = []
        current_idx = 0

        for batch in batches:
            batch_indices.append(list(range(current_idx, current_idx + len(batch))))
            current_idx += len(batch)

        return batch_indices

    def _generate_batch_with_retry(
        self,
        texts: list[str],
        batch_idx: int,
        total_batches: int,
    ) -> dict:
        """Generate embeddings for a batch with exponential backoff retry.

        Returns:
            Dict with 'embeddings' (list, may contain None) and 'error' (str or None).
        """
        last_error = None
        failed = {"embeddings": [None] * len(texts), "error": None}

        for attempt in range(MAX_RETRIES):
            try:
                start = time.perf_counter()
                response = self._client.embeddings.create(
                    model=self.model,
                    input=texts,
                )
                duration_ms = (time.perf_counter() - start) * 1000

                # The response carries the input index of every vector
                embeddings = [None] * len(texts)
                for item in response.data:
                    embeddings[item.index] = list(item.embedding)

                bad = [
                    i
                    for i, vector in enumerate(embeddings)
                    if vector is None or len(vector) != self.dimensions
                ]
                if bad:
                    last_error = (
                        f"expected {self.dimensions}-dimensional embeddings, "
                        f"got invalid vectors at batch positions {bad}"
                    )
                    logger.error(
                        "embedding dimension mismatch",
                        batch=f"{batch_idx + 1}/{total_batches}",
                        model=self.model,
                        error=last_error,
                    )
                    return {**failed, "error": last_error}

                logger.info(
                    "embeddings generated",
                    batch=f"{batch_idx + 1}/{total_batches}",
                    texts_count=len(texts),
                    model=self.model,
                    duration_ms=round(duration_ms, 2),
                )

                return {"embeddings": embeddings, "error": None}

            except RateLimitError as e:
                last_error = str(e)
                delay = INITIAL_RETRY_DELAY_SECONDS * (2**attempt)  # 1s, 2s, 4s
                logger.warn(
                    "rate limit hit, retrying",
                    attempt=attempt + 1,
                    max_retries=MAX_RETRIES,
                    delay_seconds=delay,
                    error=last_error,
                )
                time.sleep(delay)

            except APIStatusError as e:
                last_error = str(e)
                if e.status_code >= 500:
                    delay = INITIAL_RETRY_DELAY_SECONDS * (2**attempt)
                    logger.warn(
                        "server error, retrying",
                        attempt=attempt + 1,
                        max_retries=MAX_RETRIES,
                        delay_seconds=delay,
                        status_code=e.status_code,
                        error=last_error,
                    )
                    time.sleep(delay)
                else:
                    # 4xx errors other than 429 are not retried
                    logger.error(
                        "embedding generation failed",
                        batch=f"{batch_idx + 1}/{total_batches}",
                        status_code=e.status_code,
                        error=last_error,
                    )
                    return {**failed, "error": last_error}

            except Exception as e:
                last_error = str(e)
                logger.error(
                    "unexpected error during embedding generation",
                    batch=f"{batch_idx + 1}/{total_batches}",
                    error=last_error,
                )
                return {**failed, "error": last_error}

        logger.error(
            "embedding generation failed after retries",
            batch=f"{batch_idx + 1}/{total_batches}",
            max_retries=MAX_RETRIES,
            error=last_error,
        )
        return {**failed, "error": last_error}
