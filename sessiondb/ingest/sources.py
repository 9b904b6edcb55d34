from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from ..config import SessionDbConfig

SOURCE_CLAUDE = "claude"
SOURCE_CODEX = "codex"


@dataclass(frozen=True)
class TranscriptSource:
    """A tool whose transcripts live under `root`, matched by `pattern`."""

    name: str
    root: Path
    pattern: str

    def discover(self) -> Iterator[Path]:
        if not self.root.is_dir():
            return
        for path in sorted(self.root.glob(self.pattern)):
            if path.is_file():
                yield path


def default_sources(config: SessionDbConfig) -> list[TranscriptSource]:
    return [
        # ~/.claude/projects/<encoded project dir>/<session id>.jsonl
        TranscriptSource(SOURCE_CLAUDE, Path(config.claude_root).expanduser(), "*/*.jsonl"),
        # ~/.codex/sessions/YYYY/MM/DD/rollout-*.jsonl
        TranscriptSource(SOURCE_CODEX, Path(config.codex_root).expanduser(), "**/*.jsonl"),
    ]


def source_for_path(path: Path, sources: list[TranscriptSource]) -> str:
    resolved = path.expanduser().resolve()
    for source in sources:
        try:
            resolved.relative_to(source.root.expanduser().resolve())
        except ValueError:
            continue
        return source.name
    return SOURCE_CLAUDE
