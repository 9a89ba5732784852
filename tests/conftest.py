import os
import tempfile

os.environ.setdefault("TESTING", "1")
os.environ.setdefault(
    "TEST_DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "onboarding_events_test.db"),
)
os.environ.setdefault("API_SHARED_KEY", "test-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from src.backend.app.db import get_db, init_models, make_engine
from src.backend.app.main import app

API_HEADERS = {"X-Api-Key": "test-key"}

_ISOLATED_ENV = (
    "APP_ENV",
    "ALLOW_DEV_NO_AUTH",
    "REDIS_URL",
    "WHATSAPP_APP_SECRET",
    "WHATSAPP_VERIFY_TOKEN",
    "WHATSAPP_SENDER_ENABLED",
    "WHATSAPP_PHONE_NUMBER_ID",
    "WHATSAPP_ACCESS_TOKEN",
    "WEBHOOK_MAX_EVENTS",
    "REMINDERS_TIMEZONE",
    "GOOGLE_DRIVE_ROOT_FOLDER_ID",
    "GOOGLE_SERVICE_ACCOUNT_EMAIL",
    "GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY",
    "GOOGLE_DRIVE_SHARE_WITH_EMAIL",
    "GOOGLE_DRIVE_SHARE_ROLE",
    "GOOGLE_DRIVE_ALLOW_PUBLIC",
    "TRELLO_API_KEY",
    "TRELLO_TOKEN",
    "TRELLO_DEFAULT_LIST_ID",
    "TRELLO_TASK_LIST_ID",
    "TRELLO_BRIEFING_LIST_ID",
    "TRELLO_FOLLOW_UP_LIST_ID",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in _ISOLATED_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("API_SHARED_KEY", "test-key")


@pytest.fixture()
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'onboarding.db'}")
    init_models(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def _override():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override
    try:
        yield TestClient(app, headers=API_HEADERS)
    finally:
        app.dependency_overrides.pop(get_db, None)
