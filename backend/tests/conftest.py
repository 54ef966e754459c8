"""Global test fixtures for the test suite."""

import os
import sys
from pathlib import Path

# Add the backend directory to the path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Settings are read at import time
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ALLOWED_ORIGINS", "https://widget.example.com")

import pytest
import pytest_asyncio
from typing import AsyncGenerator, List, Optional
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from httpx import AsyncClient, ASGITransport

from abeai.database import build_engine, init_db
from abeai import models  # noqa: F401  (registers tables on Base.metadata)
from abeai.core.config_loader import get_rules
from abeai.core.llm_client import LLMError, LLMResponse


# ============= Mock LLM Client =============

@dataclass
class MockLLMClient:
    """Mock LLM client for testing without actual API calls."""

    responses: List[LLMResponse] = field(default_factory=list)
    calls: List[dict] = field(default_factory=list)
    error: Optional[Exception] = None
    default_response: LLMResponse = field(default_factory=lambda: LLMResponse(
        text="This is a mock response.",
        stop_reason="stop",
        model="mock-model",
    ))

    def add_text_response(self, text: str):
        """Add a simple text response."""
        self.responses.append(LLMResponse(
            text=text,
            stop_reason="stop",
            model="mock-model",
        ))

    def fail_with(self, error: Exception = None):
        """Make every following call raise."""
        self.error = error or LLMError("OpenAI API error: 503", 503)

    async def complete(
        self,
        system_prompt: str,
        messages: list,
        model: str = None,
        temperature: float = None,
        max_tokens: int = None,
    ) -> LLMResponse:
        """Mock complete method."""
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.error:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return self.default_response


# ============= Database Fixtures =============

@pytest_asyncio.fixture
async def async_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============= Mock LLM Fixtures =============

@pytest.fixture
def mock_llm_client() -> MockLLMClient:
    """Create a mock LLM client."""
    return MockLLMClient()


# ============= Rules / Settings Fixtures =============

@pytest.fixture
def rules():
    """The packaged rule tables."""
    return get_rules()


@pytest.fixture
def settings():
    """Cached settings. Patch attributes with monkeypatch so they are restored."""
    from abeai.config import get_settings

    return get_settings()


# ============= FastAPI Test Client =============

@pytest_asyncio.fixture
async def test_client(db_session, mock_llm_client) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with mocked dependencies."""
    from abeai.main import app
    from abeai.database import get_db
    from abeai.core.llm_client import get_llm_client

    # Override the database and LLM dependencies
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_llm_client] = lambda: mock_llm_client

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="https://test") as client:
        yield client

    app.dependency_overrides.clear()
