"""Tests for the command line entry point."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest
from click.testing import CliRunner

import samsync.main as main_module
from samsync.config import settings
from samsync.main import cli
from samsync.models import SyncRun
from samsync.storage import JsonlOpportunityStore, JsonlSyncRunLog

from conftest import FakeSamApi, make_notice


@pytest.fixture
def data_files(tmp_path):
    runs = str(tmp_path / "runs.jsonl")
    opportunities = str(tmp_path / "opps.jsonl")
    with patch.object(settings, "SYNC_RUN_LOG_FILE", runs), patch.object(
        settings, "OPPORTUNITY_STORE_FILE", opportunities
    ):
        yield runs, opportunities


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestRunLogCommands:
    """history and show read the JSONL run log."""

    def test_history_with_no_runs(self, runner: CliRunner, data_files) -> None:
        result = runner.invoke(cli, ["history"])
        assert result.exit_code == 0

    def test_show_unknown_run(self, runner: CliRunner, data_files) -> None:
        result = runner.invoke(cli, ["show", "missing"])
        assert result.exit_code == 1

    def test_show_recorded_run(self, runner: CliRunner, data_files) -> None:
        runs, _ = data_files
        asyncio.run(
            JsonlSyncRunLog(runs).create(
                SyncRun(
                    id="run-1",
                    sync_type="api_sync",
                    started_at=datetime.now(timezone.utc),
                )
            )
        )
        result = runner.invoke(cli, ["show", "run-1"])
        assert result.exit_code == 0

    def test_show_requires_run_id(self, runner: CliRunner, data_files) -> None:
        result = runner.invoke(cli, ["show"])
        assert result.exit_code == 2


class TestSyncCommands:
    """Commands that talk to the API."""

    def test_sync_writes_store_and_log(
        self, runner: CliRunner, data_files, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        runs, opportunities = data_files
        api = FakeSamApi([make_notice(1), make_notice(2)])
        monkeypatch.setattr(main_module, "SamOpportunitiesClient", lambda: api.client())

        result = runner.invoke(
            cli, ["sync", "--from", "2025-06-01", "--to", "2025-06-16"]
        )

        assert result.exit_code == 0
        assert api.params(0)["postedFrom"] == "06/01/2025"
        assert asyncio.run(JsonlOpportunityStore(opportunities).count()) == 2
        recorded = asyncio.run(JsonlSyncRunLog(runs).get_recent())
        assert [run.status for run in recorded] == ["completed"]

    def test_sync_dry_run_leaves_store_empty(
        self, runner: CliRunner, data_files, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _, opportunities = data_files
        api = FakeSamApi([make_notice(1)])
        monkeypatch.setattr(main_module, "SamOpportunitiesClient", lambda: api.client())

        result = runner.invoke(
            cli, ["sync", "--from", "2025-06-01", "--to", "2025-06-16", "--dry-run"]
        )

        assert result.exit_code == 0
        assert asyncio.run(JsonlOpportunityStore(opportunities).count()) == 0

    def test_sync_rejects_zero_batch_size(self, runner: CliRunner, data_files) -> None:
        result = runner.invoke(cli, ["sync", "--batch-size", "0"])
        assert result.exit_code == 2

    def test_sync_naics_repeated_codes(
        self, runner: CliRunner, data_files, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        api = FakeSamApi([make_notice(1), make_notice(2, naicsCode="237310")])
        monkeypatch.setattr(main_module, "SamOpportunitiesClient", lambda: api.client())

        result = runner.invoke(
            cli,
            [
                "sync-naics",
                "--code",
                "236220",
                "--code",
                "237310",
                "--from",
                "2025-06-01",
                "--to",
                "2025-06-16",
            ],
        )

        assert result.exit_code == 0
        assert [api.params(i)["ncode"] for i in range(2)] == ["236220", "237310"]

    def test_connection_failure_exit_code(
        self, runner: CliRunner, data_files, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        api = FakeSamApi()
        api.queue(httpx.Response(401))
        monkeypatch.setattr(main_module, "SamOpportunitiesClient", lambda: api.client())

        result = runner.invoke(cli, ["test-connection"])
        assert result.exit_code == 1
