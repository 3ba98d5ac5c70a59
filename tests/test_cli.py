import json

import pytest
from typer.testing import CliRunner

from clawgate.cli.commands import app
from clawgate.config.loader import load_config
from clawgate.cron.service import CronService

runner = CliRunner()


@pytest.fixture
def home(sandbox_home, monkeypatch):
    monkeypatch.setenv("HOME", str(sandbox_home))
    monkeypatch.delenv("PORT", raising=False)
    return sandbox_home


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "clawgate v" in result.stdout


def test_onboard_creates_config_and_workspace(home) -> None:
    result = runner.invoke(app, ["onboard"])

    assert result.exit_code == 0
    config_path = home / ".clawgate" / "config.json"
    raw = json.loads(config_path.read_text(encoding="utf-8"))
    assert raw["gateway"]["port"] == 4096
    assert raw["channels"]["telegram"]["allowedDms"] == []
    workspace = home / ".clawgate" / "workspace"
    assert (workspace / "AGENTS.md").exists()
    assert (workspace / "MEMORY.md").exists()
    assert (workspace / "memory").is_dir()


def test_cron_add_list_remove(home) -> None:
    result = runner.invoke(
        app,
        ["cron", "add", "--name", "stretch", "--message", "Stand up", "--every", "3600",
         "--channel", "telegram", "--to", "42"],
    )
    assert result.exit_code == 0
    assert "Added job 'stretch'" in result.stdout

    [job] = CronService(load_config().cron_store_path()).list_jobs()
    assert job.payload.message == "Stand up"
    assert job.schedule.every_ms == 3_600_000

    listing = runner.invoke(app, ["cron", "list"])
    assert "stretch" in listing.stdout

    disabled = runner.invoke(app, ["cron", "enable", job.id, "--disable"])
    assert "disabled" in disabled.stdout
    assert "No scheduled jobs." in runner.invoke(app, ["cron", "list"]).stdout

    removed = runner.invoke(app, ["cron", "remove", job.id])
    assert f"Removed job {job.id}" in removed.stdout
    assert "not found" in runner.invoke(app, ["cron", "remove", job.id]).stdout


def test_cron_add_rejects_bad_expression(home) -> None:
    result = runner.invoke(
        app,
        ["cron", "add", "--name", "x", "--message", "x", "--cron", "every day", "--channel", "telegram", "--to", "42"],
    )
    assert result.exit_code == 1
    assert "Invalid cron expression" in result.stdout


def test_status_shows_provider_choice(home) -> None:
    runner.invoke(app, ["onboard"])
    settings = home / ".clawgate" / "settings.json"
    settings.write_text(json.dumps({"provider": "opencode", "models": {"opencode": "opencode/big-pickle"}}))

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "Provider: opencode (opencode/big-pickle)" in result.stdout
    assert "telegram: disabled" in result.stdout
