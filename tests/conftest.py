"""Shared test fixtures."""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api.server import create_app
from src.apps.store import AppStore
from src.config import Settings
from src.health.engine import HealthChecker
from src.health.scheduler import HealthScheduler
from src.settings.store import SettingsStore
from src.uploads.store import UploadStore


def ok_handler(request: httpx.Request) -> httpx.Response:
    """Every probed service answers 200."""
    return httpx.Response(200)


@pytest.fixture
def config(tmp_path) -> Settings:
    """Settings pointing at a temp data dir, ignoring any local .env."""
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "data",
        seed_examples=False,
        health_timeout_ms=500,
    )


@pytest.fixture
def app_store(config: Settings) -> AppStore:
    return AppStore(db_path=config.db_path)


@pytest.fixture
def settings_store(config: Settings) -> SettingsStore:
    store = SettingsStore(db_path=config.db_path)
    store.ensure_defaults()
    return store


@pytest.fixture
def upload_store(config: Settings) -> UploadStore:
    return UploadStore(db_path=config.db_path, uploads_dir=config.uploads_dir, max_bytes=1024)


@pytest.fixture
def app(config, app_store, settings_store, upload_store) -> FastAPI:
    """App wired like the server lifespan, with probes answered by a mock transport."""
    app = create_app(config)
    app.state.app_store = app_store
    app.state.settings_store = settings_store
    app.state.upload_store = upload_store
    checker = HealthChecker(timeout_ms=500, transport=httpx.MockTransport(ok_handler))
    app.state.health_checker = checker
    app.state.health_scheduler = HealthScheduler(app_store, checker, settings_store=settings_store)
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)
