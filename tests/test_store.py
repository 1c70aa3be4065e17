"""Tests for the JSON-backed session metadata store."""

from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

from conduit.session.store import JsonSessionStore, MetadataStore

_T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def test_implements_protocol() -> None:
    assert isinstance(JsonSessionStore(), MetadataStore)


class TestUpsert:
    def test_insert_then_update(self) -> None:
        store = JsonSessionStore()
        assert store.upsert_session("s1", "/w", _T0) is True
        assert store.upsert_session("s1", "/w", _T0 + timedelta(minutes=5)) is False

        row = store.get_session("s1")
        assert row is not None
        assert row.last_activity == _T0 + timedelta(minutes=5)
        assert row.status == "open"
        assert len(store.list_sessions()) == 1

    def test_older_timestamp_does_not_move_activity_back(self) -> None:
        store = JsonSessionStore()
        store.upsert_session("s1", "/w", _T0)
        store.upsert_session("s1", "/w", _T0 - timedelta(hours=1))
        assert store.get_session("s1").last_activity == _T0

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        store = JsonSessionStore()
        store.upsert_session("s1", "/w", datetime(2026, 1, 1, 12, 0))
        assert store.get_session("s1").last_activity == _T0

    def test_concurrent_upserts_leave_exactly_one_row(self, tmp_path: Path) -> None:
        store = JsonSessionStore(tmp_path / "sessions.json")
        barrier = threading.Barrier(8)

        def _upsert(offset: int) -> bool:
            barrier.wait()
            return store.upsert_session("same", "/w", _T0 + timedelta(seconds=offset))

        with ThreadPoolExecutor(max_workers=8) as pool:
            inserted = list(pool.map(_upsert, range(8)))

        assert inserted.count(True) == 1
        rows = store.list_sessions()
        assert len(rows) == 1
        assert rows[0].last_activity == _T0 + timedelta(seconds=7)

    def test_display_name_only_fills_blank(self) -> None:
        store = JsonSessionStore()
        store.upsert_session("s1", "/w", _T0, display_name="first")
        store.upsert_session("s1", "/w", _T0, display_name="second")
        assert store.get_session("s1").display_name == "first"


class TestStatusAndQueries:
    def test_update_status_and_filter(self) -> None:
        store = JsonSessionStore()
        store.upsert_session("a", "/w", _T0)
        store.upsert_session("b", "/w", _T0 + timedelta(minutes=1))
        store.update_status("a", "crashed")
        store.update_status("missing", "closed")  # ignored

        assert [r.agent_session_id for r in store.list_sessions()] == ["b", "a"]
        assert [r.agent_session_id for r in store.list_sessions("crashed")] == ["a"]
        assert store.list_sessions("closed") == []

    def test_upsert_reopens(self) -> None:
        store = JsonSessionStore()
        store.upsert_session("a", "/w", _T0)
        store.update_status("a", "closed")
        store.upsert_session("a", "/w", _T0)
        assert store.get_session("a").status == "open"

    def test_rename(self) -> None:
        store = JsonSessionStore()
        store.upsert_session("a", "/w", _T0)
        store.rename("a", "my session")
        assert store.get_session("a").display_name == "my session"
        store.rename("a", None)
        assert store.get_session("a").display_name is None

    def test_returned_rows_are_copies(self) -> None:
        store = JsonSessionStore()
        store.upsert_session("a", "/w", _T0)
        row = store.get_session("a")
        row.status = "crashed"
        assert store.get_session("a").status == "open"


class TestPersistence:
    def test_round_trip_through_file(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "sessions.json"
        store = JsonSessionStore(path)
        store.upsert_session("a", "/w", _T0, display_name="n")
        store.update_status("a", "closed")

        reloaded = JsonSessionStore(path)
        row = reloaded.get_session("a")
        assert row is not None
        assert row.display_name == "n"
        assert row.status == "closed"
        assert row.last_activity == _T0
        assert not path.with_suffix(".json.tmp").exists()

    def test_corrupt_file_is_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "sessions.json"
        path.write_text("{not json", encoding="utf-8")
        store = JsonSessionStore(path)
        assert store.list_sessions() == []

    def test_invalid_rows_are_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "sessions.json"
        good = {
            "agent_session_id": "ok",
            "working_directory": "/w",
            "created_at": _T0.isoformat(),
            "last_activity": _T0.isoformat(),
        }
        path.write_text(json.dumps({"ok": good, "bad": {"status": "weird"}}), encoding="utf-8")
        store = JsonSessionStore(path)
        assert [r.agent_session_id for r in store.list_sessions()] == ["ok"]
