from __future__ import annotations

import time
from pathlib import Path

import pytest

from sessiondb.config import SessionDbConfig
from sessiondb.coordination import (
    HEALTH_ALIVE,
    HEALTH_RELEASED,
    HEALTH_TIMEOUT,
    ROLE_READER,
    ROLE_WRITER,
    HeartbeatKeeper,
    LeaseManager,
)
from sessiondb.db import connect, initialize_schema
from sessiondb.errors import CoordinationError
from sessiondb.store import SessionStore

TIMEOUT_MS = 30_000


def _pair(tmp_path: Path, clock) -> tuple[SessionStore, SessionStore]:
    db_path = tmp_path / "sessions.sqlite"
    return SessionStore(db_path, clock=clock), SessionStore(db_path, clock=clock)


def test_register_records_holder_and_is_idempotent(store: SessionStore) -> None:
    assert store.register_writer("collector") == ROLE_WRITER
    first = store.current_writer()
    assert first is not None
    assert first.writer_id == store.lease.writer_id
    assert first.writer_type == "collector"

    assert store.register_writer("collector") == ROLE_WRITER
    again = store.current_writer()
    assert again is not None
    assert again.registered_at == first.registered_at
    assert store.check_writer_health() == HEALTH_ALIVE


def test_second_register_fails_until_first_releases(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer("daemon")

        with pytest.raises(CoordinationError) as excinfo:
            second.register_writer("cli")
        assert "daemon" in str(excinfo.value)
        assert second.role == ROLE_READER

        assert first.release_writer() is True
        assert second.check_writer_health() == HEALTH_RELEASED
        assert second.register_writer("cli") == ROLE_WRITER
    finally:
        first.close()
        second.close()


def test_health_transitions_with_heartbeat_age(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        assert second.check_writer_health() == HEALTH_RELEASED
        first.register_writer()

        clock.advance(TIMEOUT_MS - 1)
        assert second.check_writer_health() == HEALTH_ALIVE

        clock.advance(1)
        assert second.check_writer_health() == HEALTH_TIMEOUT

        first.heartbeat()
        assert second.check_writer_health() == HEALTH_ALIVE
    finally:
        first.close()
        second.close()


def test_takeover_only_after_timeout(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer()

        assert second.try_takeover() is False
        assert second.role == ROLE_READER

        clock.advance(TIMEOUT_MS + 1)
        assert second.check_writer_health() == HEALTH_TIMEOUT
        assert second.try_takeover() is True
        assert second.is_writer

        holder = second.current_writer()
        assert holder is not None
        assert holder.writer_id == second.lease.writer_id
        assert second.check_writer_health() == HEALTH_ALIVE
    finally:
        first.close()
        second.close()


def test_heartbeat_before_takeover_blocks_it(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer()
        clock.advance(TIMEOUT_MS + 1)
        assert second.check_writer_health() == HEALTH_TIMEOUT

        # The holder wakes up between the observation and the takeover attempt.
        first.heartbeat()

        assert second.try_takeover() is False
        holder = second.current_writer()
        assert holder is not None
        assert holder.writer_id == first.lease.writer_id
    finally:
        first.close()
        second.close()


def test_stale_writer_detects_takeover_on_heartbeat(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer()
        clock.advance(TIMEOUT_MS + 1)
        assert second.try_takeover() is True

        with pytest.raises(CoordinationError):
            first.heartbeat()
        assert first.role == ROLE_READER
        assert not first.is_writer
    finally:
        first.close()
        second.close()


def test_takeover_of_released_lease(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer()
        first.release_writer()

        assert second.try_takeover() is True
        assert second.is_writer
    finally:
        first.close()
        second.close()


def test_register_reclaims_timed_out_lease(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer()
        clock.advance(TIMEOUT_MS)

        assert second.register_writer() == ROLE_WRITER
        with pytest.raises(CoordinationError):
            first.heartbeat()
    finally:
        first.close()
        second.close()


def test_release_by_non_holder_is_noop(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer()

        assert second.release_writer() is False
        assert second.check_writer_health() == HEALTH_ALIVE
    finally:
        first.close()
        second.close()


def test_close_releases_held_lease(tmp_path: Path, clock) -> None:
    first, second = _pair(tmp_path, clock)
    try:
        first.register_writer()
        first.close()

        assert second.check_writer_health() == HEALTH_RELEASED
        assert second.register_writer() == ROLE_WRITER
    finally:
        second.close()


def test_lease_manager_on_bare_connection(tmp_path: Path) -> None:
    conn = connect(tmp_path / "sessions.sqlite")
    try:
        initialize_schema(conn)
        now = [5_000_000]
        lease = LeaseManager(conn, writer_id="w-1", timeout_ms=100, clock=lambda: now[0])

        assert lease.role is None
        lease.register("test")
        row = conn.execute("SELECT writer_id, heartbeat FROM writer_registry").fetchone()
        assert row["writer_id"] == "w-1"
        assert row["heartbeat"] == 5_000_000

        now[0] += 50
        lease.heartbeat()
        row = conn.execute("SELECT heartbeat FROM writer_registry").fetchone()
        assert row["heartbeat"] == 5_000_050
    finally:
        conn.close()


def test_heartbeat_keeper_refreshes_and_reports_loss(tmp_path: Path) -> None:
    db_path = tmp_path / "sessions.sqlite"
    config = SessionDbConfig(heartbeat_interval_ms=20, lease_timeout_ms=60_000, auto_heartbeat=False)
    store = SessionStore(db_path, config=config)
    lost = []
    keeper = HeartbeatKeeper(
        db_path,
        store.lease.writer_id,
        interval_ms=20,
        timeout_ms=60_000,
        on_lost=lost.append,
    )
    try:
        store.register_writer()
        store.conn.execute("UPDATE writer_registry SET heartbeat = 0")
        keeper.start()

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            row = store.conn.execute("SELECT heartbeat FROM writer_registry").fetchone()
            if row["heartbeat"] > 0:
                break
            time.sleep(0.01)
        assert row["heartbeat"] > 0

        store.conn.execute("UPDATE writer_registry SET writer_id = 'someone-else'")
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not lost:
            time.sleep(0.01)
        assert lost
        assert isinstance(keeper.lost, CoordinationError)
    finally:
        keeper.stop()
        store.close()


def test_store_starts_heartbeat_thread_when_enabled(tmp_path: Path) -> None:
    config = SessionDbConfig(heartbeat_interval_ms=20, lease_timeout_ms=60_000, auto_heartbeat=True)
    store = SessionStore(tmp_path / "sessions.sqlite", config=config)
    try:
        store.register_writer()
        assert store._heartbeat is not None
        assert store._heartbeat.running

        store.release_writer()
        assert store._heartbeat is None
    finally:
        store.close()


def test_lost_lease_from_keeper_demotes_owner(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.sqlite")
    try:
        store.register_writer()
        store.lease.mark_lost(CoordinationError("gone"))

        assert store.role == ROLE_READER
    finally:
        store.close()


def test_mark_lost_logs_reason(store: SessionStore, caplog: pytest.LogCaptureFixture) -> None:
    store.register_writer()

    with caplog.at_level("WARNING", logger="sessiondb.coordination"):
        store.lease.mark_lost(CoordinationError("taken over by w-2"))

    assert store.role == ROLE_READER
    assert any("taken over by w-2" in record.getMessage() for record in caplog.records)
    assert store.lease.writer_id in caplog.text


def test_mark_lost_without_lease_is_quiet(store: SessionStore, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING", logger="sessiondb.coordination"):
        store.lease.mark_lost()

    assert store.role is None
    assert caplog.records == []
