import pytest

from tests.fakes import FakeConnection


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("JIBRI_QUEUE_ACCOUNT", "JIBRI_QUEUE_PASSWORD", "JIBRI_QUEUE_HOST", "JIBRI_QUEUE_PORT",
                 "JIBRI_QUEUE_JID", "JIBRI_QUEUE_ROOM", "JIBRI_QUEUE_IQ_TIMEOUT",
                 "JIBRI_QUEUE_RESET_ON_LEAVE", "JIBRI_QUEUE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
