from __future__ import annotations

import json
from pathlib import Path

import pytest

from sessiondb.errors import ERROR_RUNTIME, ParseFileError
from sessiondb.ingest.parser import (
    TranscriptReader,
    content_text,
    parse_jsonl,
    parse_timestamp,
)


def _flat(uuid: str, content: str, ts: int, role: str = "user", **extra) -> dict:
    return {"uuid": uuid, "role": role, "content": content, "timestamp": ts, **extra}


def test_parse_flat_records_in_file_order(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "sess-1.jsonl",
        [
            _flat("m1", "hello", 1_700_000_000_000),
            _flat("m2", "hi there", 1_700_000_000_500, role="assistant"),
        ],
    )

    description = parse_jsonl(path)

    assert description.session_id == "sess-1"
    assert [m.uuid for m in description.messages] == ["m1", "m2"]
    assert [m.role for m in description.messages] == ["user", "assistant"]
    assert [m.sequence for m in description.messages] == [0, 1]
    assert description.last_timestamp == 1_700_000_000_500
    assert description.stats.errors == 0
    assert description.end_offset == path.stat().st_size


def test_supplied_sequence_is_authoritative(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "s.jsonl",
        [
            _flat("a", "first", 1000_000_000_000, sequence=10),
            _flat("b", "second", 1000_000_000_000),
            _flat("c", "third", 1000_000_000_000, sequence=3),
        ],
    )

    messages = parse_jsonl(path).messages

    assert [(m.uuid, m.sequence) for m in messages] == [("a", 10), ("b", 1), ("c", 3)]


def test_malformed_lines_are_counted_not_fatal(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "s.jsonl",
        [
            _flat("m1", "ok", 1_700_000_000_000),
            "{not json",
            '"just a string"',
            {"role": "user", "content": "missing uuid", "timestamp": 1_700_000_000_000},
            _flat("m2", "still ok", 1_700_000_000_001),
        ],
    )

    description = parse_jsonl(path)

    assert [m.uuid for m in description.messages] == ["m1", "m2"]
    assert description.stats.errors == 3
    assert description.stats.first_error is not None
    assert description.stats.first_error.startswith("line 2:")


def test_empty_file_gives_empty_description(tmp_path: Path) -> None:
    path = tmp_path / "empty.jsonl"
    path.write_text("")

    description = parse_jsonl(path)

    assert description.is_empty
    assert description.session_id == "empty"
    assert description.stats.errors == 0


def test_missing_file_raises_typed_error(tmp_path: Path) -> None:
    with pytest.raises(ParseFileError) as excinfo:
        parse_jsonl(tmp_path / "nope.jsonl")

    assert excinfo.value.kind == ERROR_RUNTIME


def test_claude_records_use_message_blocks_and_cwd(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "abc.jsonl",
        [
            {"type": "summary", "summary": "Refactor", "leafUuid": "x"},
            {
                "type": "user",
                "uuid": "u1",
                "sessionId": "abc",
                "cwd": "/work/widget",
                "timestamp": "2025-01-02T03:04:05.000Z",
                "message": {"role": "user", "content": "please fix the parser"},
            },
            {
                "type": "assistant",
                "uuid": "u2",
                "cwd": "/work/widget",
                "timestamp": "2025-01-02T03:04:06.000Z",
                "message": {
                    "role": "assistant",
                    "content": [
                        {"type": "thinking", "thinking": "hmm"},
                        {"type": "text", "text": "Looking now."},
                        {"type": "tool_use", "name": "Read", "input": {"path": "a.py"}},
                    ],
                },
            },
            {
                "type": "user",
                "uuid": "u3",
                "timestamp": "2025-01-02T03:04:07.000Z",
                "message": {
                    "role": "user",
                    "content": [{"type": "tool_result", "content": "file body"}],
                },
            },
        ],
    )

    description = parse_jsonl(path)

    assert description.cwd == "/work/widget"
    assert description.project_name == "widget"
    assert description.embedded_session_id == "abc"
    assert [m.role for m in description.messages] == ["user", "assistant", "tool"]
    assert description.messages[0].timestamp == 1735787045000
    assert "Looking now." in description.messages[1].content
    assert '[tool_use: Read] {"path": "a.py"}' in description.messages[1].content
    assert "hmm" not in description.messages[1].content
    assert description.messages[1].tool_name == "Read"
    assert json.loads(description.messages[1].tool_args) == {"path": "a.py"}
    assert description.messages[0].tool_name is None
    assert description.messages[2].content == "file body"
    assert description.stats.skipped == 1
    assert description.stats.errors == 0


def test_codex_records_derive_uuid_from_position(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "rollout-1.jsonl",
        [
            {
                "timestamp": "2025-03-01T10:00:00Z",
                "type": "session_meta",
                "payload": {"id": "codex-1", "cwd": "/src/tool"},
            },
            {
                "timestamp": "2025-03-01T10:00:01Z",
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": "list files"}],
                },
            },
            {
                "timestamp": "2025-03-01T10:00:01Z",
                "type": "event_msg",
                "payload": {"type": "token_count"},
            },
        ],
    )

    description = parse_jsonl(path)

    assert description.cwd == "/src/tool"
    assert description.embedded_session_id == "codex-1"
    assert len(description.messages) == 1
    message = description.messages[0]
    assert message.uuid == "rollout-1:1"
    assert message.content == "list files"
    assert message.sequence == 1


def test_codex_tool_calls_and_outputs_become_messages(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "rollout-2.jsonl",
        [
            {
                "timestamp": "2025-03-01T10:00:00Z",
                "type": "turn_context",
                "payload": {"cwd": "/src/tool", "model": "gpt-5-codex"},
            },
            {
                "timestamp": "2025-03-01T10:00:02Z",
                "type": "response_item",
                "payload": {
                    "type": "function_call",
                    "name": "shell",
                    "arguments": '{"command": ["ls"]}',
                    "call_id": "call_7",
                },
            },
            {
                "timestamp": "2025-03-01T10:00:03Z",
                "type": "response_item",
                "payload": {
                    "type": "function_call_output",
                    "call_id": "call_7",
                    "output": {"output": "README.md\nsrc"},
                },
            },
        ],
    )

    description = parse_jsonl(path)

    assert description.model == "gpt-5-codex"
    call, output = description.messages
    assert call.uuid == "rollout-2:1"
    assert call.role == "assistant"
    assert call.tool_name == "shell"
    assert call.tool_args == '{"command": ["ls"]}'
    assert call.tool_call_id == "call_7"
    assert call.model == "gpt-5-codex"
    assert call.content.startswith("[tool_use: shell]")
    assert output.role == "tool"
    assert output.tool_call_id == "call_7"
    assert output.content == "README.md\nsrc"
    assert output.model is None


def test_claude_model_and_tool_ids_are_kept(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "s.jsonl",
        [
            {
                "type": "assistant",
                "uuid": "a1",
                "timestamp": 1_700_000_000_000,
                "message": {
                    "role": "assistant",
                    "model": "claude-sonnet-4",
                    "content": [
                        {"type": "tool_use", "id": "toolu_1", "name": "Bash", "input": {"cmd": "ls"}},
                    ],
                },
            },
            {
                "type": "user",
                "uuid": "u1",
                "timestamp": 1_700_000_000_001,
                "message": {
                    "role": "user",
                    "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "ok"}],
                },
            },
        ],
    )

    description = parse_jsonl(path)

    call, result = description.messages
    assert description.model == "claude-sonnet-4"
    assert call.model == "claude-sonnet-4"
    assert (call.tool_name, call.tool_call_id) == ("Bash", "toolu_1")
    assert result.role == "tool"
    assert result.tool_name is None
    assert result.tool_call_id == "toolu_1"


def test_project_path_falls_back_to_parent_dir(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(tmp_path / "proj-dir" / "s.jsonl", [_flat("m1", "x", 1_700_000_000_000)])

    description = parse_jsonl(path)

    assert description.project_path == str(tmp_path / "proj-dir")
    assert description.project_name == "proj-dir"


def test_reader_is_lazy_and_restartable(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(
        tmp_path / "s.jsonl",
        [_flat(f"m{i}", f"line {i}", 1_700_000_000_000 + i) for i in range(3)],
    )
    reader = TranscriptReader(path)

    iterator = iter(reader)
    first = next(iterator)
    assert first.uuid == "m0"

    assert [m.uuid for m in reader] == ["m0", "m1", "m2"]
    assert [m.uuid for m in reader] == ["m0", "m1", "m2"]
    assert reader.line_count == 3


def test_reader_resumes_from_offset_with_running_sequence(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(tmp_path / "s.jsonl", [_flat("m0", "a", 1_700_000_000_000)])
    first = TranscriptReader(path)
    list(first)
    write_jsonl(path, [_flat("m1", "b", 1_700_000_000_001)], append=True)

    resumed = TranscriptReader(path, start_offset=first.end_offset, start_line=first.line_count)
    messages = list(resumed)

    assert [(m.uuid, m.sequence) for m in messages] == [("m1", 1)]
    assert resumed.end_offset == path.stat().st_size


def test_incomplete_trailing_line_is_left_for_later(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(tmp_path / "s.jsonl", [_flat("m0", "a", 1_700_000_000_000)])
    complete_size = path.stat().st_size
    with path.open("a", encoding="utf-8") as handle:
        handle.write('{"uuid": "m1", "role": "user", "con')

    reader = TranscriptReader(path)
    messages = list(reader)

    assert [m.uuid for m in messages] == ["m0"]
    assert reader.end_offset == complete_size
    assert reader.stats.errors == 0


def test_trailing_line_without_newline_is_parsed_when_complete(tmp_path: Path) -> None:
    path = tmp_path / "s.jsonl"
    path.write_text(json.dumps(_flat("m0", "a", 1_700_000_000_000)))

    description = parse_jsonl(path)

    assert [m.uuid for m in description.messages] == ["m0"]
    assert description.end_offset == path.stat().st_size


def test_raw_line_is_kept(tmp_path: Path, write_jsonl) -> None:
    record = _flat("m0", "a", 1_700_000_000_000)
    path = write_jsonl(tmp_path / "s.jsonl", [record])

    message = parse_jsonl(path).messages[0]

    assert message.raw is not None
    assert json.loads(message.raw) == record


def test_parse_timestamp_variants() -> None:
    assert parse_timestamp(1_700_000_000_000) == 1_700_000_000_000
    assert parse_timestamp(1_700_000_000) == 1_700_000_000
    assert parse_timestamp(5) == 5
    assert parse_timestamp(1_700_000_000.5) == 1_700_000_000_500
    assert parse_timestamp("1700000000.25") == 1_700_000_000_250
    assert parse_timestamp("1700000000000") == 1_700_000_000_000
    assert parse_timestamp(float("nan")) is None
    assert parse_timestamp("2023-11-14T22:13:20Z") == 1_700_000_000_000
    assert parse_timestamp("2023-11-14T22:13:20") == 1_700_000_000_000
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(True) is None
    assert parse_timestamp(None) is None


def test_small_integer_timestamps_stay_milliseconds(tmp_path: Path, write_jsonl) -> None:
    path = write_jsonl(tmp_path / "s.jsonl", [_flat("m1", "early", 5), _flat("m2", "later", 2000)])

    messages = parse_jsonl(path).messages

    assert [m.timestamp for m in messages] == [5, 2000]


def test_content_text_flattens_nested_blocks() -> None:
    value = [
        {"type": "text", "text": "one"},
        {"type": "tool_result", "content": [{"type": "text", "text": "two"}]},
        {"type": "image", "source": {}},
    ]

    assert content_text(value) == "one\ntwo"
