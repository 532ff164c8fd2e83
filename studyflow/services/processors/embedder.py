"""
Embedding Service

Two layers:

1. ``SentenceTransformerProvider`` wraps a local sentence-transformers model
   behind the narrow ``embed(texts) -> vectors`` interface every consumer
   uses. The model is loaded once per process and inference runs in a
   thread so the event loop stays responsive.

2. ``EmbeddingGenerator`` is the idempotent, resumable batch job that fills
   ``document_sections.embedding`` for one content unit.

Model: google/embeddinggemma-300m
- 768 dimensions
- Normalized output, so cosine similarity is a dot product
- Free (no API costs)

Idempotency:
------------
- Only rows ``WHERE embedding IS NULL`` are selected
- Every write is ``UPDATE ... WHERE id = :id AND embedding IS NULL``, so a
  concurrently written vector is never replaced
- A failed batch is counted and skipped; its rows stay NULL for the next run
"""

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Protocol, Sequence

import numpy as np
import torch
from sentence_transformers import SentenceTransformer
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studyflow.core.config import settings
from studyflow.core.errors import PermanentExternalError, classify_exception
from studyflow.core.logging import get_logger
from studyflow.core.retry import RetryPolicy
from studyflow.models import DocumentSection

logger = get_logger(__name__)


class EmbeddingProvider(Protocol):
    """Anything that turns texts into fixed-size vectors, in input order."""

    dimension: int

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...


# ========================================
# Local sentence-transformers provider
# ========================================

@lru_cache(maxsize=2)
def _load_model(model_name: str, device: str) -> SentenceTransformer:
    # Model weights are not tied to an event loop; one copy per process
    return SentenceTransformer(model_name, device=device)


class SentenceTransformerProvider:
    """
    Embedding provider backed by sentence-transformers.

    Usage:
    ------
    provider = SentenceTransformerProvider()
    vectors = await provider.embed(["What is osmosis?", "Cell membranes ..."])
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        batch_size: Optional[int] = None,
        device: Optional[str] = None,
        normalize: bool = True,
    ):
        """
        Args:
            model_name: Model name/path (default from settings)
            batch_size: Texts per forward pass (default from settings)
            device: cpu, cuda or mps (default from settings)
            normalize: L2-normalize vectors (default True)
        """
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.device = device or settings.EMBEDDING_DEVICE
        self.normalize = normalize
        self.dimension = settings.EMBEDDING_DIMENSION

        self.model: Optional[SentenceTransformer] = None
        self._validate_device()

    def _validate_device(self) -> None:
        """Fall back to CPU when the requested accelerator is missing."""
        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("embedding_device_unavailable", requested="cuda", using="cpu")
            self.device = "cpu"
        elif self.device == "mps" and not torch.backends.mps.is_available():
            logger.warning("embedding_device_unavailable", requested="mps", using="cpu")
            self.device = "cpu"

    async def initialize(self) -> None:
        """Load the model (downloads it on first use)."""
        if self.model is not None:
            return

        logger.info("loading_embedding_model", model=self.model_name, device=self.device)
        self.model = await asyncio.to_thread(_load_model, self.model_name, self.device)
        self.dimension = self.model.get_sentence_embedding_dimension() or self.dimension
        logger.info("embedding_model_loaded", model=self.model_name, dimension=self.dimension)

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        await self.initialize()
        embeddings = await asyncio.to_thread(self._encode, list(texts))
        return [row.tolist() for row in embeddings]

    def _encode(self, texts: list[str]) -> np.ndarray:
        """Batch inference (sync, runs in a worker thread)."""
        return self.model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=self.normalize,
            show_progress_bar=False,
            convert_to_numpy=True,
        )


# ========================================
# Vector validation
# ========================================

def validate_vectors(vectors: Sequence[Sequence[float]], expected_count: int, dimension: int) -> list[list[float]]:
    """
    Check a provider response before anything is written.

    Raises:
        PermanentExternalError: count mismatch, wrong dimension or an
                                all-zero (degenerate) vector
    """
    if len(vectors) != expected_count:
        raise PermanentExternalError(
            f"Embedding count mismatch: sent {expected_count} texts, got {len(vectors)} vectors"
        )

    checked = []
    for vector in vectors:
        values = [float(v) for v in vector]
        if len(values) != dimension:
            raise PermanentExternalError(
                f"Invalid embedding dimension: expected {dimension}, got {len(values)}"
            )
        if not any(values):
            raise PermanentExternalError("Received a zero vector; input may be empty or invalid")
        checked.append(values)
    return checked


async def store_embedding_if_null(session: AsyncSession, section_id: int, vector: list[float]) -> bool:
    """Write-once update. Returns True when this call set the value."""
    result = await session.execute(
        update(DocumentSection)
        .where(DocumentSection.id == section_id, DocumentSection.embedding.is_(None))
        .values(embedding=vector)
    )
    return result.rowcount == 1


# ========================================
# Generator
# ========================================

@dataclass
class EmbeddingRunResult:
    total_sections: int
    already_embedded: int
    newly_embedded: int
    failed_batches: int
    remaining: int

    @property
    def complete(self) -> bool:
        return self.remaining == 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_sections": self.total_sections,
            "already_embedded": self.already_embedded,
            "newly_embedded": self.newly_embedded,
            "failed_batches": self.failed_batches,
            "remaining": self.remaining,
        }


class EmbeddingGenerator:
    """Fill missing section embeddings for a content unit."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: Optional[int] = None,
        dimension: Optional[int] = None,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.batch_size = batch_size or settings.EMBEDDING_BATCH_SIZE
        self.dimension = dimension or settings.EMBEDDING_DIMENSION

    async def _embed_checked(self, texts: list[str]) -> list[list[float]]:
        vectors = await self.retry_policy.call(self.provider.embed, texts)
        return validate_vectors(vectors, len(texts), self.dimension)

    async def count_missing(self, content_unit_id: int) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count(DocumentSection.id)).where(
                    DocumentSection.content_unit_id == content_unit_id,
                    DocumentSection.embedding.is_(None),
                )
            ) or 0

    async def run(self, content_unit_id: int) -> EmbeddingRunResult:
        """
        Embed every section of the unit that has no vector yet.

        Batches that fail (after the policy's retries) are logged and
        skipped; the returned ``remaining`` count comes from a fresh query
        so the caller can decide whether the unit is fully embedded.
        """
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count(DocumentSection.id)).where(
                    DocumentSection.content_unit_id == content_unit_id
                )
            ) or 0
            rows = (
                await session.execute(
                    select(DocumentSection.id, DocumentSection.content)
                    .where(
                        DocumentSection.content_unit_id == content_unit_id,
                        DocumentSection.embedding.is_(None),
                    )
                    .order_by(DocumentSection.id)
                )
            ).all()

        already = total - len(rows)
        newly = 0
        failed_batches = 0
        batch_count = (len(rows) + self.batch_size - 1) // self.batch_size

        logger.info(
            "embedding_run_started",
            content_unit_id=content_unit_id,
            total_sections=total,
            already_embedded=already,
            batches=batch_count,
        )

        for batch_number, offset in enumerate(range(0, len(rows), self.batch_size), start=1):
            batch = rows[offset:offset + self.batch_size]
            try:
                vectors = await self._embed_checked([content for _, content in batch])
            except Exception as e:
                failed_batches += 1
                logger.error(
                    "embedding_batch_failed",
                    content_unit_id=content_unit_id,
                    batch=batch_number,
                    batches=batch_count,
                    error=str(e),
                    error_kind=classify_exception(e).value,
                )
                continue

            async with self.session_factory() as session:
                for (section_id, _), vector in zip(batch, vectors):
                    if await store_embedding_if_null(session, section_id, vector):
                        newly += 1
                await session.commit()

        remaining = await self.count_missing(content_unit_id)
        result = EmbeddingRunResult(
            total_sections=total,
            already_embedded=already,
            newly_embedded=newly,
            failed_batches=failed_batches,
            remaining=remaining,
        )
        logger.info("embedding_run_finished", content_unit_id=content_unit_id, **result.to_dict())
        return result

    async def embed_sections(self, sections: Sequence[tuple[int, str]]) -> dict[int, list[float]]:
        """
        Compute and persist vectors for specific sections on demand.

        Tries one batch request first and falls back to one request per
        section when the batch fails. Sections whose single request also
        fails are left out of the returned mapping.
        """
        if not sections:
            return {}

        vectors: dict[int, list[float]] = {}
        try:
            batch = await self._embed_checked([content for _, content in sections])
            vectors = {section_id: vector for (section_id, _), vector in zip(sections, batch)}
        except Exception as e:
            logger.warning("lazy_embedding_batch_failed", sections=len(sections), error=str(e))
            for section_id, content in sections:
                try:
                    vectors[section_id] = (await self._embed_checked([content]))[0]
                except Exception as single_error:
                    logger.warning(
                        "lazy_embedding_failed",
                        section_id=section_id,
                        error=str(single_error),
                    )

        async with self.session_factory() as session:
            for section_id, vector in vectors.items():
                await store_embedding_if_null(session, section_id, vector)
            await session.commit()

        return vectors
