"""Smoke tests for the Conduit CLI."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from conduit import __version__
from conduit.cli import cli
from conduit.commands.chat import _handle_command
from conduit.protocol.events import Init, ToolCall, TurnMetadata
from conduit.session.models import Session, SessionStatus
from conduit.session.store import JsonSessionStore

from conftest import assistant_line, make_mock_process, user_prompt_line, write_log


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "conduit.yaml"
    path.write_text(
        yaml.dump(
            {
                "projects_dir": str(tmp_path / "projects"),
                "store_path": str(tmp_path / "sessions.json"),
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def logged_session(tmp_path: Path) -> Path:
    return write_log(
        tmp_path / "projects" / "-home-u-app" / "agent-1.jsonl",
        user_prompt_line("what is 2+2?", "u1", "agent-1"),
        assistant_line("4", "u2", "agent-1", log=True),
        raw_lines=("{not json",),
    )


def test_help() -> None:
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "Conduit" in result.output
    for command in ("chat", "sessions", "history"):
        assert command in result.output


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"conduit, version {__version__}" in result.output


def test_missing_config_file_errors(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["-c", str(tmp_path / "nope.yaml"), "sessions"])
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_chat_flags() -> None:
    result = CliRunner().invoke(cli, ["chat", "--help"])
    assert result.exit_code == 0
    assert "--resume" in result.output
    assert "--permission-mode" in result.output


class TestSessions:
    def test_lists_logged_sessions_with_names(
        self, config_file: Path, logged_session: Path, tmp_path: Path
    ) -> None:
        store = JsonSessionStore(tmp_path / "sessions.json")
        store.upsert_session("agent-1", "/home/u/app", datetime.now(tz=UTC), "math")

        result = CliRunner().invoke(cli, ["-c", str(config_file), "sessions"])
        assert result.exit_code == 0, result.output
        assert "Found 1 session(s)" in result.output
        assert "agent-1" in result.output
        assert "/home/u/app" in result.output
        assert "(math)" in result.output

    def test_no_sessions(self, config_file: Path) -> None:
        result = CliRunner().invoke(cli, ["-c", str(config_file), "sessions"])
        assert result.exit_code == 0
        assert "No sessions found" in result.output

    def test_usage_column(self, config_file: Path, logged_session: Path) -> None:
        result = CliRunner().invoke(cli, ["-c", str(config_file), "sessions", "--usage"])
        assert result.exit_code == 0
        assert "TOKENS" in result.output


class TestHistory:
    def test_prints_conversation(self, config_file: Path, logged_session: Path) -> None:
        result = CliRunner().invoke(cli, ["-c", str(config_file), "history", "agent-1"])
        assert result.exit_code == 0, result.output
        assert "what is 2+2?" in result.output
        assert "Records: 2" in result.output
        assert "1 malformed line(s) skipped" in result.output

    def test_unknown_session(self, config_file: Path) -> None:
        result = CliRunner().invoke(cli, ["-c", str(config_file), "history", "ghost"])
        assert result.exit_code == 1
        assert "No log found" in result.output


def test_chat_sends_prompt_and_exits(config_file: Path, tmp_path: Path) -> None:
    proc = make_mock_process()
    with patch(
        "conduit.process.handle.asyncio.create_subprocess_exec",
        new_callable=AsyncMock,
        return_value=proc,
    ):
        result = CliRunner().invoke(
            cli,
            ["-c", str(config_file), "chat", "-C", str(tmp_path), "-p", "hello"],
            input="/status\n/exit\n",
        )
    assert result.exit_code == 0, result.output
    assert "> hello" in result.output
    assert "agent started" in result.output
    assert "awaiting_id" in result.output
    assert "Session closed (exit code 0)" in result.output
    proc.stdin.write.assert_called_once()


async def test_status_shows_usage(capsys: pytest.CaptureFixture[str]) -> None:
    session = Session(key="k1", working_directory="/w", agent_session_id="agent-1")
    session.status = SessionStatus.RUNNING
    for event in (
        Init(model="claude-opus"),
        ToolCall(name="Read"),
        ToolCall(name="Read"),
        ToolCall(name="Bash"),
        TurnMetadata(duration_ms=2500, cost_usd=0.125, input_tokens=1200, output_tokens=30),
    ):
        session.metrics.apply(event)
    supervisor = MagicMock()
    supervisor.get.return_value = session

    assert await _handle_command(supervisor, "k1", "/status", AsyncMock()) == "k1"
    out = capsys.readouterr().out
    assert "id agent-1" in out
    assert "model claude-opus · 1 turns · $0.1250" in out
    assert "1,200 in / 30 out" in out
    assert "Read ×2, Bash ×1" in out
