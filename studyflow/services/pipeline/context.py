"""
Per-invocation pipeline context.

Nothing in the pipeline reaches for module-level clients or engines. Each
worker invocation builds one ``PipelineContext`` and hands it to the
scheduler, the handlers and the gates:

    async with build_pipeline_context() as ctx:
        await run_queue_tick(ctx, worker_id)

The database engine behind ``session_factory`` is created for the
invocation (NullPool) and disposed when the context exits.
"""

import dataclasses
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studyflow.core.config import Settings, settings as default_settings
from studyflow.core.errors import ConfigurationError
from studyflow.core.retry import RetryPolicy
from studyflow.db.session import worker_session_factory
from studyflow.services.clients.ai import CompletionClient
from studyflow.services.clients.storage import ObjectStorage, build_storage
from studyflow.services.clients.transcription import WhisperTranscriber
from studyflow.services.processors.embedder import (
    EmbeddingGenerator,
    EmbeddingProvider,
    SentenceTransformerProvider,
)
from studyflow.services.processors.focus import FocusMatcher
from studyflow.services.queue.job_store import JobStore


@dataclass
class PipelineContext:
    """Everything a stage needs, constructed once per worker invocation."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    storage: ObjectStorage
    embedding_provider: EmbeddingProvider
    retry_policy: RetryPolicy
    completion: Optional[CompletionClient] = None
    transcriber: Optional[WhisperTranscriber] = None
    job_store: JobStore = field(init=False)

    def __post_init__(self) -> None:
        self.job_store = JobStore(self.session_factory, retry_policy=self.retry_policy)

    def require_completion(self) -> CompletionClient:
        if self.completion is None:
            raise ConfigurationError("Completion client is not configured (ANTHROPIC_API_KEY)")
        return self.completion

    def require_transcriber(self) -> WhisperTranscriber:
        if self.transcriber is None:
            raise ConfigurationError("Transcription is not configured (OPENAI_API_KEY)")
        return self.transcriber

    def embedding_generator(self) -> EmbeddingGenerator:
        return EmbeddingGenerator(
            self.embedding_provider,
            self.session_factory,
            retry_policy=self.retry_policy,
            batch_size=self.settings.EMBEDDING_BATCH_SIZE,
            dimension=self.settings.EMBEDDING_DIMENSION,
        )

    def focus_matcher(self) -> FocusMatcher:
        return FocusMatcher(self.session_factory, self.embedding_generator())

    async def download(self, path: str) -> bytes:
        """Fetch an object, retrying transient failures."""
        policy = dataclasses.replace(self.retry_policy, max_attempts=self.settings.STORAGE_DOWNLOAD_ATTEMPTS)
        return await policy.call(self.storage.download, path)


@asynccontextmanager
async def build_pipeline_context(
    database_url: Optional[str] = None,
    **overrides: Any,
) -> AsyncIterator[PipelineContext]:
    """
    Build a context on a fresh NullPool engine.

    Clients whose API key is missing are left unset; stages that need them
    fail with a ConfigurationError. ``overrides`` replace any field
    (tests pass fakes for storage, completion and embedding provider).
    """
    async with worker_session_factory(database_url) as session_factory:
        retry_policy = overrides.pop("retry_policy", None) or RetryPolicy.from_settings()
        values: dict[str, Any] = {
            "settings": default_settings,
            "session_factory": session_factory,
            "retry_policy": retry_policy,
        }
        if "storage" not in overrides:
            values["storage"] = build_storage()
        if "embedding_provider" not in overrides:
            values["embedding_provider"] = SentenceTransformerProvider()
        if "completion" not in overrides and default_settings.ANTHROPIC_API_KEY:
            values["completion"] = CompletionClient(retry_policy=retry_policy)
        if "transcriber" not in overrides and default_settings.OPENAI_API_KEY:
            values["transcriber"] = WhisperTranscriber(retry_policy=retry_policy)
        values.update(overrides)

        yield PipelineContext(**values)
