"""Tests for the command-line interface."""

import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from forkstore.__main__ import JSONFormatter, build_parser, main
from forkstore.sync import SyncClient


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os

    for name in list(os.environ):
        if name.startswith("FORKSTORE_"):
            monkeypatch.delenv(name)


def run(db, machine, *args) -> int:
    return main(["--db", str(db), "-m", machine, *args])


class TestCommands:
    """Tests for CLI commands against file databases."""

    def test_put_and_get(self, tmp_path, capsys):
        db = tmp_path / "a.db"

        assert run(db, "A", "put", "k", "v1") == 0
        assert run(db, "A", "get", "k") == 0

        out = capsys.readouterr().out.splitlines()
        assert out[-1] == "v1"

    def test_get_missing(self, tmp_path, capsys):
        assert run(tmp_path / "a.db", "A", "get", "nope") == 1
        assert "not found" in capsys.readouterr().err

    def test_delete(self, tmp_path, capsys):
        db = tmp_path / "a.db"
        run(db, "A", "put", "k", "v1")

        assert run(db, "A", "delete", "k") == 0
        assert run(db, "A", "get", "k") == 1

    def test_delete_missing_reports_error(self, tmp_path, capsys):
        assert run(tmp_path / "a.db", "A", "delete", "nope") == 1
        assert capsys.readouterr().err.startswith("Error:")

    def test_merge_shows_branches(self, tmp_path, capsys):
        """Merging another node's database surfaces its writes as branches."""
        a_db = tmp_path / "a.db"
        b_db = tmp_path / "b.db"
        run(a_db, "A", "put", "k", "v1")
        run(a_db, "A", "put", "k", "v2")
        run(b_db, "B", "put", "k", "vB")

        assert run(a_db, "A", "merge", str(b_db)) == 0
        capsys.readouterr()

        run(a_db, "A", "get", "k")
        assert capsys.readouterr().out.strip() == "v2(*) vB"

        run(a_db, "A", "list")
        assert capsys.readouterr().out.strip() == "k: v2(*) vB"

    def test_export_import(self, tmp_path, capsys):
        b_db = tmp_path / "b.db"
        c_db = tmp_path / "c.db"
        dump = tmp_path / "dump.json"
        run(b_db, "B", "put", "k", "b1")
        run(b_db, "B", "put", "k", "b2")

        assert run(b_db, "B", "export", str(dump)) == 0
        data = json.loads(dump.read_text())
        assert data["machine_id"] == "B"
        assert len(data["entries"]) == 2

        assert run(c_db, "C", "import", str(dump)) == 0
        capsys.readouterr()
        run(c_db, "B", "get", "k")
        assert capsys.readouterr().out.strip() == "b2"

    def test_cursors_and_stats(self, tmp_path, capsys):
        db = tmp_path / "a.db"
        run(db, "A", "put", "k", "v1")
        run(db, "A", "put", "k", "v2")
        capsys.readouterr()

        run(db, "A", "cursors")
        cursors = json.loads(capsys.readouterr().out)
        assert cursors[0]["machine_id"] == "A"
        assert cursors[0]["chain_number"] == 2

        run(db, "A", "stats")
        stats = json.loads(capsys.readouterr().out)
        assert stats["live_entries"] == 1
        assert stats["superseded_entries"] == 1
        assert stats["machine_id"] == "A"

    def test_reclaim(self, tmp_path, capsys):
        db = tmp_path / "a.db"
        run(db, "A", "put", "k", "v1")
        run(db, "A", "put", "k", "v2")
        capsys.readouterr()

        assert run(db, "A", "reclaim") == 0
        assert "Reclaimed 1 entries" in capsys.readouterr().out

    def test_sync_without_peer(self, tmp_path, capsys):
        assert run(tmp_path / "a.db", "A", "sync") == 1
        assert "No peer URL" in capsys.readouterr().err

    def test_no_command(self, capsys):
        assert main([]) == 1

    def test_merge_missing_database(self, tmp_path, capsys):
        """A mistyped path is an error, not an empty merge."""
        missing = tmp_path / "nowhere" / "b.db"

        assert run(tmp_path / "a.db", "A", "merge", str(missing)) == 1

        assert "no database" in capsys.readouterr().err
        assert not missing.parent.exists()

    def test_sync_loop_uses_interval(self, tmp_path, monkeypatch):
        """--loop runs the sync loop at the configured interval."""
        monkeypatch.setenv("FORKSTORE_SYNC_INTERVAL", "2")

        with patch.object(SyncClient, "sync_loop", new=AsyncMock()) as mock_loop:
            code = run(tmp_path / "a.db", "A", "sync", "--peer", "http://peer", "--loop")

        assert code == 0
        mock_loop.assert_awaited_once_with(interval_seconds=120)

    def test_sync_loop_disabled(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("FORKSTORE_SYNC_ENABLED", "false")

        with patch.object(SyncClient, "sync_loop", new=AsyncMock()) as mock_loop:
            code = run(tmp_path / "a.db", "A", "sync", "--peer", "http://peer", "--loop")

        assert code == 1
        assert "disabled" in capsys.readouterr().err
        mock_loop.assert_not_called()


class TestParser:
    """Tests for argument parsing."""

    def test_global_options(self):
        args = build_parser().parse_args(
            ["--db", "x.db", "-m", "A", "--log-level", "debug", "merge", "o.db", "--strict"]
        )

        assert args.db == "x.db"
        assert args.machine == "A"
        assert args.log_level == "debug"
        assert args.other == "o.db"
        assert args.strict is True

    def test_async_commands_flagged(self):
        """Async commands are marked for asyncio.run, sync ones are not."""
        parser = build_parser()

        assert parser.parse_args(["sync"]).is_async is True
        assert parser.parse_args(["serve"]).is_async is True
        assert getattr(parser.parse_args(["get", "k"]), "is_async", False) is False


class TestJSONFormatter:
    """Tests for structured log output."""

    def test_format(self):
        record = logging.LogRecord(
            name="forkstore.storage.merge",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Merged %d entries",
            args=(3,),
            exc_info=None,
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["component"] == "forkstore.storage.merge"
        assert data["message"] == "Merged 3 entries"
