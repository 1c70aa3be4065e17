"""Tests for discovering resumable sessions on disk."""

from __future__ import annotations

import os
import time
from pathlib import Path

from conduit.session.scanner import decode_project_slug, exclusion_reason, scan_projects

from conftest import assistant_line, user_prompt_line, write_log


def _touch_at(path: Path, when: float) -> None:
    os.utime(path, (when, when))


def test_decode_project_slug() -> None:
    assert decode_project_slug("C--Sources-App") == "C:\\Sources\\App"
    assert decode_project_slug("-home-u-app") == "/home/u/app"
    assert decode_project_slug("") == ""


class TestExclusion:
    def test_conversation_is_kept(self, tmp_path: Path) -> None:
        path = write_log(
            tmp_path / "a.jsonl",
            {"type": "summary", "summary": "s"},
            user_prompt_line("hi", "u1", "a"),
        )
        assert exclusion_reason(path) is None

    def test_bookkeeping_only_is_excluded(self, tmp_path: Path) -> None:
        path = write_log(
            tmp_path / "a.jsonl",
            {"type": "file-history-snapshot"},
            {"type": "summary"},
        )
        assert exclusion_reason(path) == "file-history-snapshot"

    def test_only_first_ten_lines_are_checked(self, tmp_path: Path) -> None:
        objects = [{"type": "queue-operation"} for _ in range(10)]
        objects.append(assistant_line("late", "u", "a", log=True))
        path = write_log(tmp_path / "a.jsonl", *objects)
        assert exclusion_reason(path) == "queue-operation"

    def test_empty_log_is_kept(self, tmp_path: Path) -> None:
        path = tmp_path / "a.jsonl"
        path.write_text("", encoding="utf-8")
        assert exclusion_reason(path) is None


class TestScan:
    def test_lists_newest_first_and_skips_sidechains(self, tmp_path: Path) -> None:
        project = tmp_path / "-home-u-app"
        old = write_log(project / "old.jsonl", user_prompt_line("a", "u1", "old"))
        new = write_log(project / "new.jsonl", user_prompt_line("b", "u2", "new"))
        write_log(project / "agent-123.jsonl", user_prompt_line("c", "u3", "x"))
        now = time.time()
        _touch_at(old, now - 100)
        _touch_at(new, now)

        found = scan_projects(tmp_path)
        assert [s.agent_session_id for s in found] == ["new", "old"]
        assert found[0].project_slug == "-home-u-app"
        assert found[0].working_directory == "/home/u/app"
        assert not found[0].is_excluded

    def test_filter_by_project(self, tmp_path: Path) -> None:
        write_log(tmp_path / "-a" / "one.jsonl", user_prompt_line("a", "u1", "one"))
        write_log(tmp_path / "-b" / "two.jsonl", user_prompt_line("b", "u2", "two"))
        assert [s.agent_session_id for s in scan_projects(tmp_path, "-b")] == ["two"]
        assert scan_projects(tmp_path, "-missing") == []

    def test_excluded_logs_are_marked(self, tmp_path: Path) -> None:
        write_log(tmp_path / "-a" / "meta.jsonl", {"type": "summary"})
        (summary,) = scan_projects(tmp_path)
        assert summary.is_excluded
        assert summary.excluded_reason == "summary"

    def test_missing_projects_dir(self, tmp_path: Path) -> None:
        assert scan_projects(tmp_path / "nope") == []
