"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from tavernkit.services import telemetry
from tavernkit.services.settings import Settings

from helpers import make_session, reply, user


@pytest.fixture(autouse=True)
def _clear_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("TAVERNKIT_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _reset_telemetry_listeners():
    yield
    telemetry._EVENT_LISTENERS.clear()


@pytest.fixture
def text_settings() -> Settings:
    """Settings for a text completion backend with batch replies."""

    settings = Settings()
    settings.backend.family = "textgen"
    settings.backend.stream = False
    return settings


@pytest.fixture
def chat_settings() -> Settings:
    """Settings for an OpenAI chat backend with batch replies."""

    settings = Settings()
    settings.backend.stream = False
    return settings


@pytest.fixture
def session():
    return make_session(messages=[user("Hi"), reply("Hello!")])
