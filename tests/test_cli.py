"""
Tests for the CLI module (cli.py).
Covers argument parsing, help text and the store inspection commands.
"""

import asyncio
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pickrr.cli import build_parser, main, setup_logging
from pickrr.persistence import PersistenceManager


@pytest.fixture
def db_path(tmp_path, make_request):
    """A populated store on disk."""
    path = str(tmp_path / "pickrr.db")

    async def _populate():
        pm = PersistenceManager(path)
        await pm.initialize()
        await pm.insert_request_if_absent(make_request(upstream_id=42, title="The Matrix"))
        await pm.enqueue_job({"upstream_id": 43, "catalog_id": 1, "media_kind": "movie"})
        await pm.log_activity("imported", upstream_id=42, title="The Matrix")
        await pm.close()

    asyncio.run(_populate())
    return path


class TestSetupLogging:
    """Test logging setup functionality."""

    def test_setup_logging_does_not_raise(self, clean_logging):
        setup_logging("INFO")
        setup_logging("DEBUG")

    def test_setup_logging_invalid_level(self):
        with pytest.raises(AttributeError):
            setup_logging("INVALID_LEVEL")


class TestMainEntryPoint:
    """Test the main() entry point and argument parsing."""

    def test_no_command_shows_help(self):
        with patch.object(sys, "argv", ["pickrr"]):
            with pytest.raises(SystemExit) as excinfo:
                main()
            assert excinfo.value.code == 1

    def test_help_flag(self, capsys):
        with patch.object(sys, "argv", ["pickrr", "--help"]):
            with pytest.raises(SystemExit) as excinfo:
                main()
            assert excinfo.value.code == 0
        captured = capsys.readouterr()
        assert "pickrr worker" in captured.out
        assert "WEBHOOK_SECRET" in captured.out

    @pytest.mark.parametrize("command", [
        "serve", "worker", "sync", "state", "queue", "config", "logs", "test",
    ])
    def test_command_recognized(self, command):
        with patch.object(sys, "argv", ["pickrr", command, "--help"]):
            with pytest.raises(SystemExit) as excinfo:
                main()
            assert excinfo.value.code == 0

    def test_invalid_port(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["serve", "--port", "invalid"])
        assert excinfo.value.code == 2


class TestArgumentParsing:

    def test_serve_args(self):
        args = build_parser().parse_args(
            ["serve", "--host", "127.0.0.1", "-p", "9000", "--log-format", "json", "--reload"]
        )
        assert args.host == "127.0.0.1"
        assert args.port == 9000
        assert args.log_format == "json"
        assert args.reload is True

    def test_worker_args(self):
        args = build_parser().parse_args(["worker", "--interval", "0.5", "--once"])
        assert args.interval == 0.5
        assert args.once is True

    def test_config_set_args(self):
        args = build_parser().parse_args(["config", "set", "TV_SAVE_PATH", "/tv", "--db", "x.db"])
        assert args.config_command == "set"
        assert (args.key, args.value, args.db) == ("TV_SAVE_PATH", "/tv", "x.db")

    def test_logs_args(self):
        args = build_parser().parse_args(["logs", "-n", "5", "--level", "ERROR"])
        assert args.limit == 5
        assert args.level == "ERROR"


class TestServeCommand:

    def test_serve_sets_environment_and_runs_uvicorn(self, monkeypatch):
        # Recorded so the values written by the command are undone afterwards
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("LOG_LEVEL", "INFO")
        with patch("uvicorn.run") as mock_run, patch("pickrr.cli.setup_logging"):
            main(["serve", "--port", "9001", "--log-level", "DEBUG"])

        args, kwargs = mock_run.call_args
        assert args == ("pickrr.server:app",)
        assert kwargs["port"] == 9001
        assert kwargs["log_level"] == "debug"


class TestStoreCommands:

    def test_missing_database(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["state", "--db", str(tmp_path / "missing.db")])
        assert excinfo.value.code == 1
        assert "Database not found" in capsys.readouterr().out

    def test_state(self, db_path, capsys):
        main(["state", "--db", db_path])
        out = capsys.readouterr().out
        assert "Database Statistics" in out
        assert "The Matrix" in out
        assert "Queue (1)" in out

    def test_queue_list_and_clear(self, db_path, capsys):
        main(["queue", "list", "--db", db_path])
        assert "1 jobs" in capsys.readouterr().out

        main(["queue", "clear", "--db", db_path])
        assert "Cleared 1 jobs" in capsys.readouterr().out

        main(["queue", "list", "--db", db_path])
        assert "Queue is empty." in capsys.readouterr().out

    def test_config_set_and_get(self, db_path, capsys, monkeypatch):
        monkeypatch.delenv("WEBHOOK_SECRET", raising=False)
        main(["config", "set", "WEBHOOK_SECRET", "s3cret", "--db", db_path])
        main(["config", "set", "TV_SAVE_PATH", "/media/tv", "--db", db_path])
        capsys.readouterr()

        main(["config", "get", "--db", db_path])
        out = capsys.readouterr().out
        assert "TV_SAVE_PATH=/media/tv" in out
        assert "WEBHOOK_SECRET=********" in out
        assert "s3cret" not in out

    def test_logs(self, db_path, capsys):
        main(["logs", "--db", db_path])
        out = capsys.readouterr().out
        assert "imported: The Matrix" in out


class TestServiceCommands:

    @pytest.fixture
    def fake_services(self):
        services = MagicMock()
        services.close = AsyncMock()
        qbit = MagicMock(configured=True)
        qbit.test_connection = AsyncMock(return_value=(True, "Connected to qBittorrent v4.6"))
        tmdb = MagicMock(configured=False)
        services.clients = {"qbittorrent": qbit, "tmdb": tmdb}
        return services

    def test_test_command(self, fake_services, capsys):
        with patch("pickrr.services.build_services", AsyncMock(return_value=fake_services)), \
                patch("pickrr.cli.setup_logging"):
            main(["test"])
        out = capsys.readouterr().out
        assert "qbittorrent" in out and "ok" in out
        assert "tmdb" in out and "not configured" in out
        fake_services.close.assert_awaited_once()

    def test_test_command_failure_exit_code(self, fake_services):
        fake_services.clients["qbittorrent"].test_connection.return_value = (False, "refused")
        with patch("pickrr.services.build_services", AsyncMock(return_value=fake_services)), \
                patch("pickrr.cli.setup_logging"):
            with pytest.raises(SystemExit) as excinfo:
                main(["test"])
        assert excinfo.value.code == 1

    def test_sync_command(self, fake_services, capsys):
        from pickrr.reconcile import SyncResult

        fake_services.reconciliation.run = AsyncMock(return_value=SyncResult(imported=2, skipped=1))
        with patch("pickrr.services.build_services", AsyncMock(return_value=fake_services)), \
                patch("pickrr.cli.setup_logging"):
            main(["sync"])
        assert "imported=2" in capsys.readouterr().out
        fake_services.close.assert_awaited_once()

    def test_worker_once(self, fake_services, capsys, tmp_path, monkeypatch):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path))
        worker = MagicMock()
        worker.run_once = AsyncMock(return_value={"done": 1, "retry": 0, "dropped": 0})
        fake_services.worker.return_value = worker
        with patch("pickrr.services.build_services", AsyncMock(return_value=fake_services)), \
                patch("pickrr.logging_config.setup_logging"):
            main(["worker", "--once"])
        assert "done=1" in capsys.readouterr().out
