"""
Database Dependencies for FastAPI Routes

Routes declare ``db: DBSession`` and receive a session from the factory the
lifespan hook stored on ``app.state``; ``store: JobStoreDep`` gives them the
job store over the same factory. ``retriever: RetrieverDep`` searches
sections with the process-wide embedding provider, created on first use.
Tests swap the factory (or override ``get_db``) to point at their own
database and put a fake provider on ``app.state``.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from studyflow.core.logging import get_logger
from studyflow.services.processors.embedder import EmbeddingProvider, SentenceTransformerProvider
from studyflow.services.processors.retriever import HybridRetriever
from studyflow.services.queue.job_store import JobStore

logger = get_logger(__name__)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session for the current request.

    Each request gets its own session; routes commit explicitly. On error
    the session is rolled back and the exception propagates to FastAPI's
    handlers.
    """
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
        except Exception as e:
            logger.error(
                "database_session_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            await session.rollback()
            raise


DBSession = Annotated[AsyncSession, Depends(get_db)]


def get_job_store(request: Request) -> JobStore:
    """Job store over the app's session factory."""
    return JobStore(request.app.state.session_factory)


JobStoreDep = Annotated[JobStore, Depends(get_job_store)]


def get_embedding_provider(request: Request) -> EmbeddingProvider:
    """Query embedding provider, kept on ``app.state`` so the model loads once."""
    provider = getattr(request.app.state, "embedding_provider", None)
    if provider is None:
        provider = SentenceTransformerProvider()
        request.app.state.embedding_provider = provider
    return provider


def get_retriever(
    request: Request,
    provider: Annotated[EmbeddingProvider, Depends(get_embedding_provider)],
) -> HybridRetriever:
    return HybridRetriever(request.app.state.session_factory, provider)


RetrieverDep = Annotated[HybridRetriever, Depends(get_retriever)]
