from __future__ import annotations

import dataclasses
import json

import pytest
from typer.testing import CliRunner

from eventcall import cli
from eventcall.fallback import SubmissionQueue

from conftest import make_rsvp

runner = CliRunner()


@pytest.fixture()
def cli_settings(monkeypatch, tmp_path):
    patched = dataclasses.replace(
        cli.settings, store_backend="file", store_dir=tmp_path / "store"
    )
    monkeypatch.setattr(cli, "settings", patched)
    return patched


def test_no_command_shows_help():
    result = runner.invoke(cli.app, [])
    assert result.exit_code == 0
    assert "seed-data" in result.output


def test_queue_lists_local_fallback_entries(cli_settings):
    assert "No locally stored RSVPs." in runner.invoke(cli.app, ["queue"]).output

    SubmissionQueue().store("evt-1", make_rsvp("r1", name="Jane Doe").to_wire())
    result = runner.invoke(cli.app, ["queue", "--event", "evt-1"])

    assert result.exit_code == 0
    assert "r1@example.com" in result.output
    assert "rsvp=r1" in result.output


def test_seed_pending_and_sync(cli_settings):
    seeded = runner.invoke(
        cli.app, ["seed-data", "--owner", "owner@example.com", "--events", "2", "--max-rsvps", "2"]
    )
    assert seeded.exit_code == 0
    assert "Seed complete: 2 events" in seeded.output

    pending = runner.invoke(cli.app, ["pending"])
    assert "Pending intake entries: 0" in pending.output
    assert "Last sync: never" in pending.output

    synced = runner.invoke(cli.app, ["sync", "--user", "owner@example.com"])
    assert synced.exit_code == 0
    report = json.loads(synced.output)["sync"]
    assert report["total"] == 0

    assert "Last sync: never" not in runner.invoke(cli.app, ["pending"]).output


def test_seed_refuses_remote_backend(monkeypatch, cli_settings):
    monkeypatch.setattr(cli, "settings", dataclasses.replace(cli_settings, store_backend="github"))
    result = runner.invoke(cli.app, ["seed-data", "--owner", "owner@example.com"])
    assert result.exit_code == 1


def test_config_show_writes_nothing(cli_settings, tmp_path):
    path = tmp_path / "eventcall.toml"
    result = runner.invoke(cli.app, ["config", "--show", "--config-path", str(path)])
    assert result.exit_code == 0
    assert json.loads(result.output)["config_path"] == str(path)
    assert not path.exists()
