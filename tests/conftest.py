from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from sessiondb.config import CONFIG_ENV_OVERRIDES
from sessiondb.store import SessionStore


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("SESSIONDB_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("SESSIONDB_CLAUDE_ROOT", str(tmp_path / "claude" / "projects"))
    monkeypatch.setenv("SESSIONDB_CODEX_ROOT", str(tmp_path / "codex" / "sessions"))
    monkeypatch.setenv("SESSIONDB_AUTO_HEARTBEAT", "0")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> Iterator[SessionStore]:
    handle = SessionStore(tmp_path / "sessions.sqlite", clock=clock)
    try:
        yield handle
    finally:
        handle.close()


@pytest.fixture
def write_jsonl() -> Callable[..., Path]:
    def _write(path: Path, records: list[Any], *, append: bool = False) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
        with path.open("a" if append else "w", encoding="utf-8") as handle:
            for line in lines:
                handle.write(line + "\n")
        return path

    return _write
