from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import pytest

from shared.database import MessageStore
from shared.errors import StorageError
from shared.models import MessageStatus, ScheduledMessage


def _msg(msg_id: str, scheduled_at: float = 100.0, status=MessageStatus.PENDING) -> ScheduledMessage:
    return ScheduledMessage(id=msg_id, channel="C1", text=f"text {msg_id}", scheduled_at=scheduled_at, status=status)


def test_load_returns_empty_when_no_prior_state(tmp_path: Path):
    store = MessageStore(str(tmp_path / "fresh.db"))
    assert store.load() == []


def test_append_and_load_preserve_order(store: MessageStore):
    for i in range(3):
        store.append(_msg(f"m{i}", scheduled_at=300 - i))
    loaded = store.load()
    assert [m.id for m in loaded] == ["m0", "m1", "m2"]
    assert loaded[0].created_at is not None
    assert loaded[0].status == MessageStatus.PENDING


def test_save_replaces_entire_collection(store: MessageStore):
    store.append(_msg("old"))
    store.save([_msg("a"), _msg("b", status=MessageStatus.SENT)])
    loaded = store.load()
    assert [m.id for m in loaded] == ["a", "b"]
    assert loaded[1].status == MessageStatus.SENT


def test_state_survives_new_store_instance(db_path: Path, store: MessageStore):
    store.append(_msg("keep"))
    reopened = MessageStore(str(db_path))
    assert [m.id for m in reopened.load()] == ["keep"]


def test_corrupt_file_degrades_to_empty_with_warning(db_path: Path, caplog):
    db_path.write_bytes(b"definitely not a sqlite database " * 64)
    store = MessageStore(str(db_path))

    with caplog.at_level(logging.WARNING, logger="shared.database"):
        assert store.load() == []

    assert any(r.levelno == logging.WARNING and r.name == "shared.database" for r in caplog.records)
    assert Path(f"{db_path}.corrupt").exists()
    assert not Path(f"{db_path}-wal").exists()

    # Store is usable again after the corrupt file was moved aside
    store.append(_msg("after"))
    assert [m.id for m in store.load()] == ["after"]


def test_save_to_unwritable_location_raises(tmp_path: Path):
    store = MessageStore(str(tmp_path / "no" / "such" / "dir" / "messages.db"))
    with pytest.raises(StorageError):
        store.save([_msg("x")])


def test_duplicate_id_append_raises(store: MessageStore):
    store.append(_msg("dup"))
    with pytest.raises(StorageError):
        store.append(_msg("dup"))


def test_update_status_only_moves_pending_records(store: MessageStore):
    store.append(_msg("p"))
    assert store.update_status("p", MessageStatus.SENT, sent_at=123.0) is True
    # Terminal records are never mutated again
    assert store.update_status("p", MessageStatus.CANCELLED) is False

    record = store.get("p")
    assert record.status == MessageStatus.SENT
    assert record.sent_at == 123.0


def test_get_unknown_id_returns_none(store: MessageStore):
    assert store.get("missing") is None


def test_legacy_table_is_migrated(db_path: Path):
    conn = sqlite3.connect(str(db_path))
    conn.execute(
        "CREATE TABLE scheduled_messages (id TEXT PRIMARY KEY, channel TEXT NOT NULL, "
        "text TEXT NOT NULL, scheduled_at REAL, status TEXT NOT NULL DEFAULT 'pending')"
    )
    conn.execute("INSERT INTO scheduled_messages (id, channel, text, scheduled_at) VALUES ('legacy', 'C9', 'hi', 42)")
    conn.commit()
    conn.close()

    loaded = MessageStore(str(db_path)).load()
    assert len(loaded) == 1
    assert loaded[0].id == "legacy"
    assert loaded[0].status == MessageStatus.PENDING
    assert loaded[0].sent_at is None
    assert loaded[0].created_at is None


def test_unknown_status_is_loaded_as_is(store: MessageStore):
    store.save([_msg("weird", status="archived")])
    loaded = store.load()
    assert loaded[0].status == "archived"
    assert not loaded[0].is_pending


def _hold_exclusive_lock(db_path: Path) -> sqlite3.Connection:
    blocker = sqlite3.connect(str(db_path))
    blocker.execute("PRAGMA locking_mode = EXCLUSIVE")
    blocker.execute("BEGIN EXCLUSIVE")
    return blocker


def test_locked_database_is_not_treated_as_corrupt(db_path: Path, store: MessageStore, caplog):
    store.append(_msg("keep"))
    blocker = _hold_exclusive_lock(db_path)
    try:
        with caplog.at_level(logging.WARNING, logger="shared.database"):
            assert MessageStore(str(db_path), timeout=0.1).load() == []
    finally:
        blocker.rollback()
        blocker.close()

    assert not Path(f"{db_path}.corrupt").exists()
    assert ".corrupt" not in caplog.text
    # Once the lock is released the record is there again
    assert [m.id for m in MessageStore(str(db_path)).load()] == ["keep"]


def test_strict_load_raises_while_database_is_locked(db_path: Path, store: MessageStore):
    store.append(_msg("keep"))
    blocker = _hold_exclusive_lock(db_path)
    try:
        with pytest.raises(StorageError):
            MessageStore(str(db_path), timeout=0.1).load(strict=True)
    finally:
        blocker.rollback()
        blocker.close()

    assert [m.id for m in store.load(strict=True)] == ["keep"]


def test_corrupt_file_moves_wal_sidecars_aside(db_path: Path):
    db_path.write_bytes(b"definitely not a sqlite database " * 64)
    Path(f"{db_path}-wal").write_bytes(b"stale wal")
    Path(f"{db_path}-shm").write_bytes(b"stale shm")

    assert MessageStore(str(db_path)).load() == []

    assert Path(f"{db_path}.corrupt-wal").read_bytes() == b"stale wal"
    assert Path(f"{db_path}.corrupt-shm").read_bytes() == b"stale shm"
    assert not Path(f"{db_path}-wal").exists()
    assert not Path(f"{db_path}-shm").exists()
