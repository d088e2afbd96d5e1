"""Tests for the bonsai command line."""

from __future__ import annotations

import plistlib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner

from bonsai.cli.commands.root import cli
from bonsai.core.errors import StoreUnavailableError
from bonsai.core.models.enums import Phase, RunStatus
from bonsai.core.services.dispatcher import CycleReport, ItemOutcome
from bonsai.core.services.picker import ItemSnapshot, rank_actionable

if TYPE_CHECKING:
    from pathlib import Path

    from pytest_mock import MockerFixture

pytestmark = pytest.mark.integration

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("BONSAI_DATA_DIR", str(tmp_path / "data"))
    path = tmp_path / "config.toml"
    path.write_text(
        '[heartbeat]\ninterval_seconds = 300\nlease_mechanism = "filelock"\n\n'
        '[worker]\ncommand = { "*" = "bonsai-test-worker" }\n',
        encoding="utf-8",
    )
    return path


class TestRoot:
    def test_version(self) -> None:
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert result.output.strip() == "bonsai 0.1.0"

    def test_help_lists_commands(self) -> None:
        result = CliRunner().invoke(cli, [])
        assert result.exit_code == 0
        for name in ("heartbeat", "queue", "schedule"):
            assert name in result.output


class TestHeartbeat:
    def test_idle_cycle_against_empty_store(self, config_file: Path) -> None:
        result = CliRunner().invoke(cli, ["heartbeat", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "No actionable items." in result.output

    def test_report_lists_outcomes(self, config_file: Path, mocker: MockerFixture) -> None:
        report = CycleReport(started_at=NOW)
        report.reconcile.integrated = ["item-9"]
        report.outcomes = [
            ItemOutcome("item-1", run_id="r1", status=RunStatus.COMPLETED),
            ItemOutcome("item-2", run_id="r2", status=RunStatus.TIMEOUT, detail="budget spent"),
        ]
        mocker.patch("bonsai.cli.commands.heartbeat._run_once", AsyncMock(return_value=report))

        result = CliRunner().invoke(cli, ["heartbeat", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Integrated: item-9" in result.output
        assert "item-1: completed" in result.output
        assert "item-2: timeout (budget spent)" in result.output

    def test_contended_cycle_exits_zero(self, config_file: Path, mocker: MockerFixture) -> None:
        report = CycleReport(started_at=NOW, contended=True)
        mocker.patch("bonsai.cli.commands.heartbeat._run_once", AsyncMock(return_value=report))

        result = CliRunner().invoke(cli, ["heartbeat", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Another heartbeat is running" in result.output

    def test_unavailable_store_exits_one(self, config_file: Path, mocker: MockerFixture) -> None:
        mocker.patch(
            "bonsai.cli.commands.heartbeat._run_once",
            AsyncMock(side_effect=StoreUnavailableError("disk is gone")),
        )

        result = CliRunner().invoke(cli, ["heartbeat", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Store unavailable" in result.output

    def test_invalid_config_exits_one(self, tmp_path: Path) -> None:
        path = tmp_path / "config.toml"
        path.write_text("[heartbeat]\nmax_concurrency = 0\n", encoding="utf-8")

        result = CliRunner().invoke(cli, ["heartbeat", "--config", str(path)])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestQueue:
    def test_empty_queue(self, config_file: Path) -> None:
        result = CliRunner().invoke(cli, ["queue", "--config", str(config_file)])
        assert result.exit_code == 0, result.output
        assert "No actionable items." in result.output

    def test_rows_show_score_breakdown(self, config_file: Path, mocker: MockerFixture) -> None:
        ranked = rank_actionable(
            [
                ItemSnapshot(
                    item_id="impl",
                    phase=Phase.IMPLEMENTING,
                    created_at=NOW - timedelta(hours=1),
                    has_unread=True,
                    worker_identity="claude",
                ),
                ItemSnapshot(
                    item_id="plan", phase=Phase.PLANNING, created_at=NOW - timedelta(hours=1)
                ),
                ItemSnapshot(
                    item_id="research", phase=Phase.RESEARCH, created_at=NOW - timedelta(hours=1)
                ),
            ],
            now=NOW,
        )
        mocker.patch("bonsai.cli.commands.queue._rank", AsyncMock(return_value=ranked))

        result = CliRunner().invoke(cli, ["queue", "-n", "2", "--config", str(config_file)])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].lstrip().startswith("1. impl")
        assert "unread +200" in lines[0]
        assert "@claude" in lines[0]
        assert lines[1].lstrip().startswith("2. research")
        assert lines[-1] == "... and 1 more"


class TestSchedule:
    def test_cron_line_rounds_interval_to_minutes(self, config_file: Path) -> None:
        result = CliRunner().invoke(
            cli, ["schedule", "--format", "cron", "--config", str(config_file)]
        )
        assert result.exit_code == 0
        line = result.output.strip()
        assert line.startswith("*/5 * * * * ")
        assert "heartbeat --config" in line
        assert "scheduler.log" in line

    def test_launchd_plist(self, config_file: Path) -> None:
        result = CliRunner().invoke(
            cli, ["schedule", "--format", "launchd", "--config", str(config_file)]
        )
        assert result.exit_code == 0
        start = result.output.index("<?xml")
        end = result.output.index("</plist>") + len("</plist>")
        payload = plistlib.loads(result.output[start:end].encode("utf-8"))
        assert payload["Label"] == "dev.bonsai.heartbeat"
        assert payload["StartInterval"] == 300
        assert payload["ProgramArguments"][-2:] == ["--config", str(config_file)]
