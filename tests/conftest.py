"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from pathlib import Path

import pytest

from helpers import FakeGateway
from message_service import MessageService
from shared.database import MessageStore


@pytest.fixture(scope="function")
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "messages.db"


@pytest.fixture(scope="function")
def store(db_path: Path) -> MessageStore:
    s = MessageStore(str(db_path))
    s.init_db()
    return s


@pytest.fixture(scope="function")
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def service(store: MessageStore, gateway: FakeGateway) -> MessageService:
    return MessageService(store, gateway)
