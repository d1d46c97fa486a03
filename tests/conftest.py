from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nurture.config import settings
from nurture.database import Base
from nurture.services.conversation_store import ConversationStore


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    import nurture.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ConversationStore(session_factory, max_messages=500, max_attempts=3, retry_backoff_seconds=0)


@pytest.fixture
def patched_store(store):
    """Route the process-wide store lookups to the in-memory store."""
    with patch("nurture.services.conversation_service.get_conversation_store", return_value=store), patch(
        "nurture.main.get_conversation_store", return_value=store
    ):
        yield store


@pytest.fixture
def media_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "media_storage_dir", str(tmp_path))
    monkeypatch.setattr(settings, "media_signing_secret", "test-secret")
    monkeypatch.setattr(settings, "public_base_url", "https://nurture.example")
    return tmp_path
