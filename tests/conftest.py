from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Fresh SQLite database and a stub-only environment for every test."""
    db_path = tmp_path / "clara.db"
    monkeypatch.setenv("DB_PATH", str(db_path))
    monkeypatch.setenv("PROVIDER", "stub")
    for name in (
        "DATABASE_URL",
        "SUPABASE_DATABASE_URL",
        "AGENT_NAME",
        "CHECKOUT_URL",
        "STRIPE_SECRET_KEY",
        "SUPABASE_JWT_SECRET",
        "KNOWLEDGE_MAX_CHARS",
    ):
        monkeypatch.delenv(name, raising=False)
    return db_path


@pytest.fixture
def seeded() -> None:
    """Clara agent plus the demo catalog from the bundled presets."""
    from clara.agent_presets import seed_from_presets

    seed_from_presets()


@pytest.fixture
def app():
    from clara.main import app as fastapi_app

    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


