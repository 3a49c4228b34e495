from collections.abc import Iterator
from pathlib import Path

from fastapi.testclient import TestClient
import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from pdfchat.config import get_settings
from pdfchat.db import Base, engine_options, get_engine
from pdfchat.main import app, get_session_cache


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_cache.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_cache.cache_clear()


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    database_url = f"sqlite+pysqlite:///{tmp_path / 'queue.db'}"
    sqlite_engine = create_engine(database_url, **engine_options(database_url))
    Base.metadata.create_all(bind=sqlite_engine)
    yield sqlite_engine
    sqlite_engine.dispose()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[TestClient]:
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'api-tests.db'}")
    monkeypatch.setenv("DB_ECHO", "false")
    monkeypatch.setenv("VECTOR_INDEX_PATH", str(tmp_path / "vector_index" / "index.db"))
    monkeypatch.setenv("OBJECT_STORE_DIR", str(tmp_path / "objects"))
    monkeypatch.setenv("EMBED_PROVIDER", "hashing")
    monkeypatch.setenv("LLM_ENABLED", "false")
    monkeypatch.setenv("LOG_JSON", "false")

    sqlite_engine = get_engine()
    Base.metadata.create_all(bind=sqlite_engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    sqlite_engine.dispose()
