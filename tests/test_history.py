"""Tests for the job history log."""

import json
import threading

import pytest

from nas_backup_agent.core.history import (
    get_history_log,
    get_history_stats,
    log_job,
    read_history,
    set_history_log,
)


@pytest.fixture
def history_path(tmp_path):
    path = tmp_path / "history.log"
    set_history_log(path)
    yield path
    set_history_log(None)


class TestSetHistoryLog:
    """Tests for set_history_log function."""

    def test_set_path(self, history_path):
        """Test records go to the configured file."""
        log_job(status="success", kind="files")
        assert history_path.exists()
        assert get_history_log() == history_path

    def test_set_none_disables_logging(self, tmp_path):
        """Test setting None disables logging."""
        path = tmp_path / "history.log"
        set_history_log(path)
        set_history_log(None)

        log_job(status="success", kind="files")

        assert not path.exists()
        assert get_history_log() is None

    def test_creates_parent_directories(self, tmp_path):
        """Test creates parent directories if needed."""
        path = tmp_path / "deep" / "nested" / "history.log"
        set_history_log(str(path))

        assert path.parent.exists()

        set_history_log(None)


class TestLogJob:
    """Tests for log_job function."""

    def test_logs_basic_record(self, history_path):
        """Test a record carries timestamp, pid, status and kind."""
        log_job(status="success", kind="image", hostname="office-pc")

        record = json.loads(history_path.read_text().strip())
        assert record["status"] == "success"
        assert record["kind"] == "image"
        assert record["hostname"] == "office-pc"
        assert "timestamp" in record
        assert "pid" in record

    def test_omits_unset_fields(self, history_path):
        """Test None fields and empty warnings are left out."""
        log_job(status="error", kind="files", error="share unreachable", warnings=[])

        record = json.loads(history_path.read_text().strip())
        assert record["error"] == "share unreachable"
        assert "warnings" not in record
        assert "duration_seconds" not in record
        assert "manifest" not in record

    def test_rounds_duration(self, history_path):
        """Test durations are rounded to milliseconds."""
        log_job(status="success", kind="image", duration_seconds=12.345678)
        assert read_history()[0]["duration_seconds"] == 12.346

    def test_appends(self, history_path):
        """Test records are appended, one per line."""
        log_job(status="success", kind="image")
        log_job(status="error", kind="image", error="All 2 capture(s) failed")

        assert len(history_path.read_text().splitlines()) == 2

    def test_concurrent_writers(self, history_path):
        """Test concurrent appends never interleave lines."""
        threads = [
            threading.Thread(
                target=log_job,
                kwargs={"status": "success", "kind": "files", "details": {"n": n}},
            )
            for n in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        records = read_history()
        assert sorted(r["details"]["n"] for r in records) == list(range(10))


class TestReadHistory:
    """Tests for read_history function."""

    def test_missing_file(self, tmp_path):
        """Test a missing file is an empty history."""
        assert read_history(tmp_path / "nope.log") == []

    def test_skips_corrupt_lines(self, history_path):
        """Test unparseable lines are skipped."""
        log_job(status="success", kind="image")
        with open(history_path, "a") as f:
            f.write("{not json\n\n")
        log_job(status="error", kind="image")

        assert [r["status"] for r in read_history()] == ["success", "error"]

    def test_limit(self, history_path):
        """Test limit keeps the most recent records."""
        for n in range(5):
            log_job(status="success", kind="files", details={"n": n})

        assert [r["details"]["n"] for r in read_history(limit=2)] == [3, 4]
        assert read_history(limit=0) == []


class TestHistoryStats:
    """Tests for get_history_stats function."""

    def test_counts(self, history_path):
        """Test counts per status and the last job."""
        log_job(status="success", kind="image")
        log_job(status="error", kind="files", error="boom")
        log_job(status="success", kind="files")

        stats = get_history_stats(history_path)

        assert stats["total"] == 3
        assert stats["success"] == 2
        assert stats["error"] == 1
        assert stats["last"]["kind"] == "files"

    def test_empty(self, tmp_path):
        """Test stats of an empty history."""
        stats = get_history_stats(tmp_path / "history.log")
        assert stats == {"total": 0, "success": 0, "error": 0, "last": None}
