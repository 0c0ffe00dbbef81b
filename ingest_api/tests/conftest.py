"""Shared pytest fixtures for ingest API tests."""

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ingest_api.config import settings
from ingest_api.db import Base, get_db
from ingest_api.main import app


@pytest.fixture()
def db_session_factory():
    """In-memory SQLite store shared across threads for one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def app_ref(db_session_factory):
    """The FastAPI app with ``get_db`` bound to the in-memory store."""

    def _override_get_db() -> Iterator[Session]:
        db = db_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture()
def client(app_ref) -> TestClient:
    # No context manager: the lifespan hook would touch the configured database.
    return TestClient(app_ref)


@pytest.fixture(autouse=True)
def _default_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin limits and auth so an ambient .env cannot change test behaviour."""
    monkeypatch.setattr(settings, "api_token", None)
    monkeypatch.setattr(settings, "max_batch_size", 5000)
    monkeypatch.setattr(settings, "max_payload_bytes", 64 * 1024)
