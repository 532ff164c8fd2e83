"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file (aiosqlite, NullPool) with the
full schema created from the models, so job store operations run their
real conditional updates. External collaborators (object storage,
completions, transcription, embeddings) are replaced by the in-memory
fakes defined here.

References:
-----------
- Pytest Fixtures: https://docs.pytest.org/en/stable/fixture.html
- FastAPI Testing: https://fastapi.tiangolo.com/advanced/async-tests/
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_FORMAT", "text")

import hashlib
from collections import deque
from typing import Any, AsyncGenerator, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from studyflow.core.config import settings
from studyflow.core.errors import PermanentExternalError
from studyflow.core.retry import RetryPolicy
from studyflow.db.base import Base
from studyflow.db.session import create_engine, create_session_factory
from studyflow.models import ContentUnit
from studyflow.services.pipeline.context import PipelineContext
from studyflow.services.queue.job_store import JobStore
from studyflow.services.units import create_unit

import studyflow.models  # noqa: F401  (register tables)


# ================================
# Fakes for external collaborators
# ================================

class FakeStorage:
    """Object storage backed by a dict."""

    def __init__(self, objects: Optional[dict[str, bytes]] = None):
        self.objects = dict(objects or {})
        self.downloads: list[str] = []

    async def download(self, path: str) -> bytes:
        self.downloads.append(path)
        if path not in self.objects:
            raise PermanentExternalError(f"Object not found: {path}", provider_name="storage")
        return self.objects[path]

    async def upload(self, path: str, data: bytes) -> None:
        self.objects[path] = data


class FakeEmbeddingProvider:
    """
    Deterministic vectors: one hot slot chosen from the text hash, so equal
    texts get equal vectors and every vector is non-zero.
    """

    def __init__(self, dimension: int = settings.EMBEDDING_DIMENSION, fail: bool = False):
        self.dimension = dimension
        self.fail = fail
        self.calls: list[list[str]] = []

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise PermanentExternalError("embedding backend rejected the batch")
        vectors = []
        for text in texts:
            slot = int(hashlib.sha256(text.encode("utf-8")).hexdigest(), 16) % self.dimension
            vector = [0.0] * self.dimension
            vector[slot] = 1.0
            vectors.append(vector)
        return vectors


class FakeCompletion:
    """
    Completion client returning queued answers.

    ``text_answers`` / ``json_answers`` are consumed in order; an answer
    that is an exception instance is raised instead. When a queue is empty
    the default answer is returned.
    """

    def __init__(
        self,
        text_answers: Sequence[Any] = (),
        json_answers: Sequence[Any] = (),
        pdf_answers: Sequence[Any] = (),
        image_answers: Sequence[Any] = (),
        default_text: str = "## Topic\nA summary line that is long enough.",
        default_json: Any = None,
    ):
        self.text_answers = deque(text_answers)
        self.json_answers = deque(json_answers)
        self.pdf_answers = deque(pdf_answers)
        self.image_answers = deque(image_answers)
        self.default_text = default_text
        self.default_json = default_json if default_json is not None else {}
        self.prompts: list[str] = []

    @staticmethod
    def _next(queue: deque, default: Any) -> Any:
        answer = queue.popleft() if queue else default
        if isinstance(answer, BaseException):
            raise answer
        return answer

    async def complete_text(self, prompt: str, system: Optional[str] = None, max_tokens: Optional[int] = None) -> str:
        self.prompts.append(prompt)
        return self._next(self.text_answers, self.default_text)

    async def complete_json(self, prompt: str, system: Optional[str] = None, max_tokens: Optional[int] = None) -> Any:
        self.prompts.append(prompt)
        return self._next(self.json_answers, self.default_json)

    async def extract_text_from_pdf(self, data: bytes) -> str:
        return self._next(self.pdf_answers, "")

    async def extract_text_from_image(self, data: bytes, file_name: str = "") -> str:
        return self._next(self.image_answers, "")


class FakeTranscriber:
    def __init__(self, transcript: str = ""):
        self.transcript = transcript

    async def transcribe(self, data: bytes, file_name: str, language: Optional[str] = None) -> str:
        return self.transcript


def fast_retry_policy(max_attempts: int = 2) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.01, multiplier=1.0, jitter=0.0, max_delay=0.01)


# ================================
# Database Fixtures
# ================================

@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Fresh SQLite database file per test.

    A file (not ``:memory:``) so every session, including the concurrent
    ones a queue tick opens, sees the same database.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'studyflow.db'}", pooled=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(
        session_factory,
        retry_policy=fast_retry_policy(),
        lease_seconds=60,
        max_attempts=3,
    )


@pytest_asyncio.fixture
async def unit(session_factory) -> ContentUnit:
    async with session_factory() as session:
        return await create_unit(session, "Biology - Cell Division")


# ================================
# Pipeline Fixtures
# ================================

@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def pipeline_ctx(session_factory, storage, completion, embedding_provider) -> PipelineContext:
    """
    Context wired to the test database and the fakes.

    Usage:
        async def test_stage(pipeline_ctx, completion):
            completion.json_answers.append({...})
    """
    return PipelineContext(
        settings=settings,
        session_factory=session_factory,
        storage=storage,
        embedding_provider=embedding_provider,
        retry_policy=fast_retry_policy(),
        completion=completion,
        transcriber=FakeTranscriber(),
    )


# ================================
# Pytest Hooks
# ================================

def pytest_addoption(parser):
    """Add custom pytest options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests that require PostgreSQL/pgvector and real API keys"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        return
    skip = pytest.mark.skip(reason="needs --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)
