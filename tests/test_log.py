"""Tests for durable log paths, forward reads and token usage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conduit.errors import RecoveryGap
from conduit.protocol.events import AssistantText, UserPrompt
from conduit.session.log import SessionLog, calculate_usage, log_path, project_slug

from conftest import assistant_line, user_prompt_line, write_log


class TestPaths:
    @pytest.mark.parametrize(
        ("working_directory", "slug"),
        [
            ("C:\\Sources\\App", "C--Sources-App"),
            ("/home/u/app", "-home-u-app"),
            ("/home/u/my.project_v2", "-home-u-my-project-v2"),
        ],
    )
    def test_project_slug(self, working_directory: str, slug: str) -> None:
        assert project_slug(working_directory) == slug

    def test_log_path(self, tmp_path: Path) -> None:
        path = log_path(tmp_path, "/home/u/app", "abc")
        assert path == tmp_path / "-home-u-app" / "abc.jsonl"


class TestRead:
    def test_records_in_file_order_with_positions(self, tmp_path: Path) -> None:
        path = write_log(
            tmp_path / "s.jsonl",
            {"type": "summary", "summary": "x"},
            user_prompt_line("hi", "u1", "s"),
            assistant_line("hello", "u2", "s", log=True),
        )
        result = SessionLog(path).read()
        assert [r.uuid for r in result.records] == ["u1", "u2"]
        assert [r.line_number for r in result.records] == [2, 3]
        assert result.records[0].frame.events == (UserPrompt(text="hi"),)
        assert result.records[1].frame.events == (AssistantText(text="hello"),)
        assert result.skipped == 1
        assert result.end_offset == path.stat().st_size

        with path.open("rb") as fh:
            fh.seek(result.records[1].offset)
            assert json.loads(fh.readline())["uuid"] == "u2"

    def test_malformed_lines_are_reported_and_skipped(self, tmp_path: Path) -> None:
        path = write_log(
            tmp_path / "s.jsonl",
            assistant_line("a", "u1", "s", log=True),
            raw_lines=("{truncated", '{"type": "assistant", "uuid": "u3", "message": {"content": "b"}}'),
        )
        result = SessionLog(path).read()
        assert [r.uuid for r in result.records] == ["u1", "u3"]
        assert len(result.errors) == 1

    def test_partial_trailing_line_is_left_for_next_read(self, tmp_path: Path) -> None:
        path = write_log(tmp_path / "s.jsonl", assistant_line("a", "u1", "s", log=True))
        complete = path.stat().st_size
        tail = json.dumps(assistant_line("b", "u2", "s", log=True))
        with path.open("a", encoding="utf-8") as fh:
            fh.write(tail[:20])

        log = SessionLog(path)
        first = log.read()
        assert [r.uuid for r in first.records] == ["u1"]
        assert first.end_offset == complete

        with path.open("a", encoding="utf-8") as fh:
            fh.write(tail[20:] + "\n")
        second = log.read(first.end_offset, first.end_line)
        assert [r.uuid for r in second.records] == ["u2"]
        assert second.records[0].line_number == 2

    def test_missing_log_is_a_recovery_gap(self, tmp_path: Path) -> None:
        log = SessionLog(tmp_path / "missing.jsonl")
        assert not log.exists()
        with pytest.raises(RecoveryGap):
            log.read()

    def test_lines_without_uuid_are_skipped(self, tmp_path: Path) -> None:
        path = write_log(
            tmp_path / "s.jsonl",
            {"type": "assistant", "message": {"content": "no uuid"}},
        )
        result = SessionLog(path).read()
        assert result.records == []
        assert result.skipped == 1


class TestRecordsAfter:
    def _log(self, tmp_path: Path) -> SessionLog:
        path = write_log(
            tmp_path / "s.jsonl",
            *(assistant_line(f"m{i}", f"u{i}", "s", log=True) for i in range(5)),
        )
        return SessionLog(path)

    def test_after_known_uuid(self, tmp_path: Path) -> None:
        result = self._log(tmp_path).records_after("u2")
        assert [r.uuid for r in result.records] == ["u3", "u4"]

    def test_unknown_or_none_returns_everything(self, tmp_path: Path) -> None:
        log = self._log(tmp_path)
        assert len(log.records_after(None).records) == 5
        assert len(log.records_after("nope").records) == 5

    def test_after_last_uuid_is_empty(self, tmp_path: Path) -> None:
        assert self._log(tmp_path).records_after("u4").records == []


class TestUsage:
    def test_sums_message_usage(self, tmp_path: Path) -> None:
        line = {
            "type": "assistant",
            "message": {
                "usage": {
                    "input_tokens": 100,
                    "output_tokens": 20,
                    "cache_creation_input_tokens": 5,
                    "cache_read_input_tokens": 75,
                }
            },
        }
        path = write_log(tmp_path / "s.jsonl", line, line, {"type": "summary"}, raw_lines=("garbage",))
        usage = calculate_usage(path, budget=1000)
        assert usage.valid
        assert usage.input_tokens == 200
        assert usage.total_tokens == 400
        assert usage.remaining_tokens == 600
        assert usage.percentage_used == pytest.approx(40.0)

    def test_missing_log(self, tmp_path: Path) -> None:
        usage = calculate_usage(tmp_path / "none.jsonl")
        assert not usage.valid
        assert usage.total_tokens == 0
