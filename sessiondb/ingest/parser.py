from __future__ import annotations

import datetime as dt
import json
import math
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import ParseFileError, PermissionDeniedError

MESSAGE_ROLES = ("user", "assistant", "tool", "system")

_ROLE_ALIASES = {
    "human": "user",
    "developer": "system",
    "function": "tool",
    "tool_result": "tool",
}

# Record types that carry no conversation text; they are skipped without counting
# as errors.
_NON_MESSAGE_TYPES = {
    "summary",
    "file-history-snapshot",
    "event_msg",
    "compacted",
    "queue-operation",
}

_TEXT_BLOCK_TYPES = {"text", "input_text", "output_text"}

_CODEX_TOOL_CALLS = {"function_call", "custom_tool_call", "local_shell_call"}
_CODEX_TOOL_OUTPUTS = {"function_call_output", "custom_tool_call_output"}


class RecordError(ValueError):
    pass


@dataclass
class ParsedMessage:
    uuid: str
    role: str
    content: str
    timestamp: int
    sequence: int
    raw: str | None = None
    model: str | None = None
    tool_name: str | None = None
    tool_args: str | None = None
    tool_call_id: str | None = None


@dataclass
class ParseStats:
    lines: int = 0
    messages: int = 0
    skipped: int = 0
    errors: int = 0
    first_error: str | None = None

    def record_error(self, line_index: int, message: str) -> None:
        self.errors += 1
        if self.first_error is None:
            self.first_error = f"line {line_index + 1}: {message}"


@dataclass
class SessionDescription:
    session_id: str
    path: str
    cwd: str | None = None
    embedded_session_id: str | None = None
    model: str | None = None
    messages: list[ParsedMessage] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)
    end_offset: int = 0
    line_count: int = 0

    @property
    def project_path(self) -> str:
        if self.cwd:
            return self.cwd
        return str(Path(self.path).parent)

    @property
    def project_name(self) -> str:
        return project_name_for(self.project_path)

    @property
    def last_timestamp(self) -> int | None:
        if not self.messages:
            return None
        return max(message.timestamp for message in self.messages)

    @property
    def is_empty(self) -> bool:
        return not self.messages


def project_name_for(path: str) -> str:
    normalized = path.replace("\\", "/").rstrip("/")
    if not normalized:
        return path
    return normalized.split("/")[-1]


def parse_timestamp(value: Any) -> int | None:
    """Epoch milliseconds from a number, numeric string or ISO 8601 text.

    Integers are already milliseconds. Only a fractional number below 1e11 is
    read as epoch seconds.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if not value.is_integer() and abs(value) < 1e11:
            return int(value * 1000)
        return int(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return parse_timestamp(float(text))
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return int(parsed.timestamp() * 1000)


def content_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [content_text(item) for item in value]
        return "\n".join(part for part in parts if part)
    if not isinstance(value, dict):
        return str(value)
    block_type = value.get("type")
    if block_type in _TEXT_BLOCK_TYPES:
        return str(value.get("text") or "")
    if block_type == "tool_use":
        tool_input = json.dumps(value.get("input") or {}, ensure_ascii=False)
        return f"[tool_use: {value.get('name') or 'unknown'}] {tool_input}"
    if block_type == "tool_result":
        return content_text(value.get("content"))
    if block_type in {"thinking", "redacted_thinking", "image"}:
        return ""
    return content_text(value.get("text") or value.get("content"))


def normalize_role(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    role = value.strip().lower()
    return _ROLE_ALIASES.get(role, role)


def _only_tool_results(content: Any) -> bool:
    if not isinstance(content, list) or not content:
        return False
    return all(isinstance(block, dict) and block.get("type") == "tool_result" for block in content)


def _tool_call(content: Any) -> tuple[str | None, str | None, str | None]:
    """(tool_name, tool_args, tool_call_id) of the first tool block in `content`."""

    if not isinstance(content, list):
        return None, None, None
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "tool_use":
            tool_args = json.dumps(block.get("input") or {}, ensure_ascii=False)
            return _text_or_none(block.get("name")), tool_args, _text_or_none(block.get("id"))
        if block.get("type") == "tool_result":
            return None, None, _text_or_none(block.get("tool_use_id"))
    return None, None, None


def _text_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _coerce_uuid(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class TranscriptReader:
    """Lazy reader over one JSONL transcript.

    Iterating yields `ParsedMessage` items in file order and can be repeated;
    each pass re-opens the file at `start_offset`. After a pass, `stats`,
    `cwd`, `embedded_session_id`, `model`, `end_offset` and `line_count`
    describe what was consumed. A final line with no newline that does not
    parse is treated as still being written and is left for the next pass.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        session_id: str | None = None,
        start_offset: int = 0,
        start_line: int = 0,
        keep_raw: bool = True,
    ) -> None:
        self.path = Path(path).expanduser()
        self.session_id = session_id or self.path.stem
        self.start_offset = start_offset
        self.start_line = start_line
        self.keep_raw = keep_raw
        self._reset()

    def _reset(self) -> None:
        self.stats = ParseStats()
        self.cwd: str | None = None
        self.embedded_session_id: str | None = None
        self.model: str | None = None
        self.end_offset = self.start_offset
        self.line_count = self.start_line

    def _open(self):
        try:
            return self.path.open("rb")
        except FileNotFoundError as exc:
            raise ParseFileError(f"transcript not found: {self.path}") from exc
        except PermissionError as exc:
            raise PermissionDeniedError(f"cannot read transcript: {self.path}") from exc
        except OSError as exc:
            raise ParseFileError(f"cannot open transcript {self.path}: {exc}") from exc

    def __iter__(self) -> Iterator[ParsedMessage]:
        self._reset()
        handle = self._open()
        with handle:
            if self.start_offset:
                handle.seek(self.start_offset)
            offset = self.start_offset
            line_index = self.start_line
            for raw_line in handle:
                complete = raw_line.endswith(b"\n")
                try:
                    text = raw_line.decode("utf-8")
                except UnicodeDecodeError:
                    if not complete:
                        return
                    text = None
                payload: Any = None
                decode_error: str | None = None
                if text is None:
                    decode_error = "invalid utf-8"
                elif text.strip():
                    try:
                        payload = json.loads(text)
                    except json.JSONDecodeError as exc:
                        if not complete:
                            return
                        decode_error = f"invalid json: {exc.msg}"
                offset += len(raw_line)
                current_index = line_index
                line_index += 1
                self.end_offset = offset
                self.line_count = line_index
                if text is not None and not text.strip():
                    continue
                self.stats.lines += 1
                if decode_error is not None:
                    self.stats.record_error(current_index, decode_error)
                    continue
                try:
                    message = self._message_from(payload, current_index)
                except RecordError as exc:
                    self.stats.record_error(current_index, str(exc))
                    continue
                if message is None:
                    self.stats.skipped += 1
                    continue
                if self.keep_raw and text is not None:
                    message.raw = text.rstrip("\r\n")
                self.stats.messages += 1
                yield message

    def _message_from(self, payload: Any, line_index: int) -> ParsedMessage | None:
        if not isinstance(payload, dict):
            raise RecordError("record is not an object")
        kind = payload.get("type")
        if isinstance(payload.get("cwd"), str) and payload["cwd"]:
            self.cwd = payload["cwd"]
        if isinstance(payload.get("sessionId"), str) and payload["sessionId"]:
            self.embedded_session_id = payload["sessionId"]
        if kind == "session_meta":
            meta = payload.get("payload")
            if isinstance(meta, dict):
                if isinstance(meta.get("cwd"), str) and meta["cwd"]:
                    self.cwd = meta["cwd"]
                if isinstance(meta.get("id"), str) and meta["id"]:
                    self.embedded_session_id = meta["id"]
            return None
        if kind == "turn_context":
            context = payload.get("payload")
            if isinstance(context, dict):
                self.model = _text_or_none(context.get("model")) or self.model
            return None
        if kind == "response_item":
            return self._codex_message(payload, line_index)
        if kind in _NON_MESSAGE_TYPES:
            return None

        message = payload.get("message") if isinstance(payload.get("message"), dict) else None
        role = normalize_role(payload.get("role"))
        if role is None and message is not None:
            role = normalize_role(message.get("role"))
        if role is None and normalize_role(kind) in MESSAGE_ROLES:
            role = normalize_role(kind)
        if role is None:
            if "uuid" in payload or "content" in payload:
                raise RecordError("message record without role")
            return None
        if role not in MESSAGE_ROLES:
            raise RecordError(f"unknown role {role!r}")

        raw_content = payload["content"] if "content" in payload else (message or {}).get("content")
        if role == "user" and _only_tool_results(raw_content):
            role = "tool"
        uuid = _coerce_uuid(payload.get("uuid"))
        if uuid is None:
            raise RecordError("message record without uuid")
        timestamp = parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            raise RecordError("message record without a valid timestamp")
        model = _text_or_none(payload.get("model")) or _text_or_none((message or {}).get("model"))
        if model:
            self.model = model
        tool_name, tool_args, tool_call_id = _tool_call(raw_content)
        return ParsedMessage(
            uuid=uuid,
            role=role,
            content=content_text(raw_content),
            timestamp=timestamp,
            sequence=self._sequence(payload, line_index),
            model=model,
            tool_name=tool_name,
            tool_args=tool_args,
            tool_call_id=tool_call_id,
        )

    def _codex_message(self, payload: dict[str, Any], line_index: int) -> ParsedMessage | None:
        item = payload.get("payload")
        if not isinstance(item, dict):
            return None
        item_type = item.get("type")
        if item_type == "message":
            role = normalize_role(item.get("role"))
            if role not in MESSAGE_ROLES:
                raise RecordError(f"unknown role {item.get('role')!r}")
            content = content_text(item.get("content"))
            tool_name = tool_args = tool_call_id = None
        elif item_type in _CODEX_TOOL_CALLS:
            role = "assistant"
            tool_name = _text_or_none(item.get("name")) or "unknown"
            arguments = item.get("arguments", item.get("input", item.get("action")))
            if arguments is None or isinstance(arguments, str):
                tool_args = arguments
            else:
                tool_args = json.dumps(arguments, ensure_ascii=False)
            tool_call_id = _text_or_none(item.get("call_id"))
            content = f"[tool_use: {tool_name}] {tool_args or '{}'}"
        elif item_type in _CODEX_TOOL_OUTPUTS:
            role = "tool"
            output = item.get("output")
            if isinstance(output, dict):
                output = output.get("output") or output.get("content")
            content = content_text(output)
            tool_name = tool_args = None
            tool_call_id = _text_or_none(item.get("call_id"))
        else:
            return None
        timestamp = parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            raise RecordError("message record without a valid timestamp")
        # Codex lines carry no id; file position is stable for an append-only log.
        uuid = _coerce_uuid(item.get("id")) or f"{self.session_id}:{line_index}"
        return ParsedMessage(
            uuid=uuid,
            role=role,
            content=content,
            timestamp=timestamp,
            sequence=self._sequence(payload, line_index),
            model=self.model if role == "assistant" else None,
            tool_name=tool_name,
            tool_args=tool_args,
            tool_call_id=tool_call_id,
        )

    @staticmethod
    def _sequence(payload: dict[str, Any], line_index: int) -> int:
        supplied = payload.get("sequence")
        if isinstance(supplied, int) and not isinstance(supplied, bool):
            return supplied
        return line_index

    def describe(self) -> SessionDescription:
        """Read the whole remaining file into a SessionDescription."""

        messages = list(self)
        return SessionDescription(
            session_id=self.session_id,
            path=str(self.path),
            cwd=self.cwd,
            embedded_session_id=self.embedded_session_id,
            model=self.model,
            messages=messages,
            stats=self.stats,
            end_offset=self.end_offset,
            line_count=self.line_count,
        )


def iter_messages(path: Path | str, **kwargs: Any) -> Iterator[ParsedMessage]:
    return iter(TranscriptReader(path, **kwargs))


def parse_jsonl(path: Path | str, *, session_id: str | None = None) -> SessionDescription:
    return TranscriptReader(path, session_id=session_id).describe()
