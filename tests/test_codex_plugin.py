from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest

from loom_mcp.agents import (
    AgentConfig,
    AgentExecuteOptions,
    CodexAgentPlugin,
    ConfigurationError,
    ErrorEvent,
    JsonlBuffer,
    TextEvent,
    ToolResultEvent,
    ToolUseEvent,
    extract_error_message,
)
from loom_mcp.agents import base as agent_base
from loom_mcp.agents.codex import parse_codex_record

FAKE_CODEX = """#!/bin/sh
if [ "$1" = "--version" ]; then
  echo "codex-cli 0.46.0"
  exit 0
fi
echo "$@" > "$(dirname "$0")/args.txt"
cat > "$(dirname "$0")/stdin.txt"
printf '{"type":"item.completed","item":{"type":"agent_message","text":"Hel'
sleep 0.1
printf 'lo"}}\\n'
echo '{"type":"item.started","item":{"type":"command_execution","command":"ls -la"}}'
echo 'this is not json'
echo '{"type":"item.completed","item":{"type":"command_execution","exit_code":0}}'
printf '{"type":"item.completed","item":{"type":"agent_message","text":"<promise>COMPLETE</promise>"}}'
"""


def write_script(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


def make_plugin(command: Path | str, **config) -> CodexAgentPlugin:
    plugin = CodexAgentPlugin()
    asyncio.run(
        plugin.initialize(AgentConfig(id="codex", plugin="codex", command=str(command), **config))
    )
    return plugin


def test_build_args_defaults() -> None:
    plugin = make_plugin("codex")
    assert plugin.build_args("do it") == ["exec", "--full-auto", "--json", "--sandbox", "workspace-write"]
    assert plugin.get_stdin_input("do it") == "do it"


def test_build_args_with_model_and_options() -> None:
    plugin = make_plugin(
        "codex", model="o4-mini", options={"full_auto": False, "sandbox": "read-only"}
    )
    assert plugin.build_args("x") == ["exec", "--json", "--model", "o4-mini", "--sandbox", "read-only"]


def test_invalid_sandbox_option_is_configuration_error() -> None:
    plugin = CodexAgentPlugin()
    with pytest.raises(ConfigurationError, match="sandbox must be one of"):
        asyncio.run(
            plugin.initialize(
                AgentConfig(id="codex", plugin="codex", options={"sandbox": "everything"})
            )
        )
    assert not plugin.is_ready


def test_execute_streams_events(tmp_path: Path) -> None:
    script = write_script(tmp_path / "codex", FAKE_CODEX)
    plugin = make_plugin(script)
    batches: list[list] = []
    text_chunks: list[str] = []
    records: list[dict] = []

    async def scenario():
        handle = await plugin.execute(
            "Fix the bug",
            options=AgentExecuteOptions(
                cwd=tmp_path,
                on_events=batches.append,
                on_stdout=text_chunks.append,
                on_jsonl_message=records.append,
            ),
        )
        return await handle.wait()

    result = asyncio.run(scenario())

    assert result.success
    assert result.exit_code == 0
    assert result.events == [
        TextEvent("Hello"),
        ToolUseEvent("bash", {"command": "ls -la"}),
        ToolResultEvent(),
        TextEvent("<promise>COMPLETE</promise>"),
    ]
    assert "<promise>COMPLETE</promise>" in result.output
    assert "".join(text_chunks) == result.output
    assert sum(len(batch) for batch in batches) == 4
    assert len(records) == 4
    assert (tmp_path / "args.txt").read_text().split() == [
        "exec",
        "--full-auto",
        "--json",
        "--sandbox",
        "workspace-write",
    ]
    assert (tmp_path / "stdin.txt").read_text() == "Fix the bug"


def test_execute_nonzero_exit_reports_error_event(tmp_path: Path) -> None:
    script = write_script(tmp_path / "codex", "#!/bin/sh\necho 'auth failed' >&2\nexit 2\n")
    plugin = make_plugin(script)

    async def scenario():
        handle = await plugin.execute("x", options=AgentExecuteOptions(cwd=tmp_path))
        return await handle.wait()

    result = asyncio.run(scenario())

    assert not result.success
    assert result.exit_code == 2
    assert isinstance(result.events[-1], ErrorEvent)
    assert "auth failed" in result.events[-1].message
    assert result.error == result.events[-1].message


def test_execute_spawn_failure_returns_failed_handle(tmp_path: Path) -> None:
    plugin = make_plugin(tmp_path / "missing-codex")
    batches: list[list] = []

    async def scenario():
        handle = await plugin.execute("x", options=AgentExecuteOptions(on_events=batches.append))
        return await handle.wait()

    result = asyncio.run(scenario())

    assert not result.success
    assert result.exit_code is None
    assert len(result.events) == 1
    assert isinstance(result.events[0], ErrorEvent)
    assert batches == [result.events]


def test_execute_interrupt_marks_result(tmp_path: Path) -> None:
    script = write_script(tmp_path / "codex", "#!/bin/sh\ncat > /dev/null\nexec sleep 10\n")
    plugin = make_plugin(script)

    async def scenario():
        handle = await plugin.execute("x", options=AgentExecuteOptions(cwd=tmp_path))
        await asyncio.sleep(0.2)
        handle.interrupt()
        return await handle.wait()

    result = asyncio.run(scenario())

    assert not result.success
    assert result.interrupted
    assert result.signal == "SIGTERM"
    assert result.error == "Codex CLI was interrupted"


def test_detect_reads_version(tmp_path: Path) -> None:
    script = write_script(tmp_path / "codex", FAKE_CODEX)
    plugin = make_plugin(script)

    detected = asyncio.run(plugin.detect())

    assert detected.available
    assert detected.version == "0.46.0"
    assert detected.executable_path == str(script)


def test_detect_missing_binary(tmp_path: Path) -> None:
    plugin = make_plugin(tmp_path / "nope")

    detected = asyncio.run(plugin.detect())

    assert not detected.available
    assert "not found in PATH" in (detected.error or "")


def test_detect_times_out(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(agent_base, "DETECT_TIMEOUT_SECONDS", 0.3)
    script = write_script(tmp_path / "codex", "#!/bin/sh\nexec sleep 10\n")
    plugin = make_plugin(script)

    detected = asyncio.run(plugin.detect())

    assert not detected.available
    assert detected.error == "Timeout waiting for --version"


def test_detect_enforces_minimum_version(tmp_path: Path) -> None:
    class PickyCodex(CodexAgentPlugin):
        meta = replace(CodexAgentPlugin.meta, min_version="9.0.0")

    script = write_script(tmp_path / "codex", FAKE_CODEX)
    plugin = PickyCodex()
    asyncio.run(plugin.initialize(AgentConfig(id="codex", plugin="codex", command=str(script))))

    detected = asyncio.run(plugin.detect())

    assert not detected.available
    assert detected.version == "0.46.0"
    assert "older than required" in (detected.error or "")


def test_parse_legacy_message_records() -> None:
    assert parse_codex_record({"type": "message", "role": "user", "content": "prompt"}) == []
    assert parse_codex_record(
        {
            "type": "message",
            "role": "assistant",
            "content": [
                {"type": "text", "text": "Looking"},
                {"type": "function_call", "name": "shell", "arguments": {"command": "ls"}},
            ],
        }
    ) == [TextEvent("Looking"), ToolUseEvent("shell", {"command": "ls"})]
    assert parse_codex_record({"message": {"content": "plain"}}) == [TextEvent("plain")]


def test_parse_tool_records() -> None:
    assert parse_codex_record(
        {"type": "function_call", "function": {"name": "apply_patch", "arguments": "{}"}}
    ) == [ToolUseEvent("apply_patch", "{}")]
    assert parse_codex_record({"type": "function_call_output", "output": "ok"}) == [
        ToolResultEvent()
    ]
    assert parse_codex_record(
        {"type": "tool_result", "is_error": True, "error": {"message": "denied"}}
    ) == [ErrorEvent("denied"), ToolResultEvent()]


def test_parse_error_and_text_records() -> None:
    assert parse_codex_record({"type": "text", "text": "hi"}) == [TextEvent("hi")]
    assert parse_codex_record({"type": "error", "message": "rate limited"}) == [
        ErrorEvent("rate limited")
    ]
    assert parse_codex_record({"type": "turn.failed", "error": {"message": "quota"}}) == [
        ErrorEvent("quota")
    ]
    assert parse_codex_record({"type": "thread.started", "thread_id": "t"}) == []


def test_parse_file_change_item() -> None:
    record = {
        "type": "item.completed",
        "item": {"type": "file_change", "changes": [{"path": "a.py", "kind": "update"}]},
    }
    assert parse_codex_record(record) == [ToolUseEvent("update", {"file_path": "a.py"})]


def test_parse_output_skips_malformed_lines() -> None:
    plugin = CodexAgentPlugin()
    data = '{"type":"text","text":"a"}\nnot-json\n[1, 2]\n\n{"type":"text","text":"b"}'
    assert plugin.parse_output(data) == [TextEvent("a"), TextEvent("b")]


def test_jsonl_buffer_holds_partial_records() -> None:
    buffer = JsonlBuffer()
    assert buffer.feed('{"a": 1}\n{"b"') == ['{"a": 1}']
    assert buffer.pending == '{"b"'
    assert buffer.feed(': 2}\n') == ['{"b": 2}']
    assert buffer.feed('{"c": 3}') == []
    assert buffer.flush() == ['{"c": 3}']
    assert buffer.flush() == []


def test_extract_error_message_shapes() -> None:
    assert extract_error_message("plain") == "plain"
    assert extract_error_message({"message": "from message"}) == "from message"
    assert extract_error_message({"error": "from error"}) == "from error"
    assert extract_error_message({"code": 1}) == '{"code": 1}'
    assert extract_error_message(None) == ""
    assert extract_error_message("") == ""
    assert extract_error_message(42) == "42"
