from __future__ import annotations

import json

from click.testing import CliRunner

from sessionflow.cli.main import app
from sessionflow.streams.decoder import format_frame


def _capture(tmp_path, *frames: str):
    path = tmp_path / "capture.sse"
    path.write_text("".join(frames), encoding="utf-8")
    return path


def test_replay_prints_final_snapshot(tmp_path) -> None:
    path = _capture(
        tmp_path,
        format_frame("text", "A"),
        format_frame("tool_use", {"id": "1", "name": "x", "input": {}}),
        format_frame("tool_result", {"tool_use_id": "1", "content": "ok"}),
        format_frame("done"),
    )

    result = CliRunner().invoke(app, ["replay", str(path), "--session-id", "abc"])

    assert result.exit_code == 0, result.output
    snapshot = json.loads(result.output)
    assert snapshot["sessionId"] == "abc"
    assert snapshot["phase"] == "completed"
    assert [block["type"] for block in snapshot["finalMessageContent"]] == ["text", "tool_use", "tool_result"]


def test_replay_with_events_lists_decoded_events_first(tmp_path) -> None:
    path = _capture(tmp_path, format_frame("text", "hi"), format_frame("done"))

    result = CliRunner().invoke(app, ["replay", str(path), "--events"])

    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert json.loads(lines[0]) == {"kind": "text", "text": "hi"}
    assert json.loads(lines[1]) == {"kind": "done"}


def test_replay_of_truncated_capture_exits_nonzero(tmp_path) -> None:
    path = _capture(tmp_path, format_frame("text", "partial"))

    result = CliRunner().invoke(app, ["replay", str(path)])

    assert result.exit_code == 1
    assert json.loads(result.output)["error"] == "Unexpected end of stream"


def test_frame_command_encodes_one_frame() -> None:
    result = CliRunner().invoke(app, ["frame", "text", "hello"])

    assert result.exit_code == 0
    assert result.output == format_frame("text", "hello")


def test_replay_missing_file_is_usage_error(tmp_path) -> None:
    result = CliRunner().invoke(app, ["replay", str(tmp_path / "nope.sse")])

    assert result.exit_code == 2


def test_replay_keeps_last_frame_without_trailing_newline(tmp_path) -> None:
    path = _capture(tmp_path, format_frame("text", "A"), format_frame("done").rstrip("\n"))

    result = CliRunner().invoke(app, ["replay", str(path)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["phase"] == "completed"
