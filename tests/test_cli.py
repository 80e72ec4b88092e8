"""Tests for CLI commands."""

import re
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from crosswire.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def workspace(tmp_path, monkeypatch):
    """Run every command against a throwaway database."""
    for var in ("CROSSWIRE_CONFIG", "CROSSWIRE_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CROSSWIRE_DB", str(tmp_path / "cli.db"))
    return tmp_path


def test_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "Slack" in result.output or "sync" in result.output


def test_db_stats():
    result = runner.invoke(app, ["db", "--stats"])
    assert result.exit_code == 0
    assert "contacts" in result.output
    assert "pending_approvals" in result.output


def test_db_reset(workspace):
    result = runner.invoke(app, ["db", "--reset"])
    assert result.exit_code == 0
    assert (workspace / "cli.db").exists()


def test_db_migrate():
    runner.invoke(app, ["db", "--stats"])
    result = runner.invoke(app, ["db", "--migrate"])
    assert result.exit_code == 0
    assert "0 changes" in result.output


def test_credentials_set_and_list():
    result = runner.invoke(
        app, ["credentials", "set", "u1", "slack", "--token", "xoxp", "--meta", "slack_user_id=UME"]
    )
    assert result.exit_code == 0
    result = runner.invoke(app, ["credentials", "list", "u1"])
    assert "slack" in result.output
    assert "valid" in result.output


def test_status_recommends_initial_sync():
    runner.invoke(app, ["credentials", "set", "u1", "slack", "--token", "xoxp"])
    result = runner.invoke(app, ["status", "u1"])
    assert result.exit_code == 0
    assert "initial sync" in result.output


def test_status_json():
    result = runner.invoke(app, ["status", "u1", "--json"])
    assert result.exit_code == 0
    assert '"recommendation"' in result.output


def test_sync_unknown_platform_fails():
    result = runner.invoke(app, ["sync", "u1", "--platform", "teams"])
    assert result.exit_code == 1
    assert "unknown_platform" in result.output


def test_sync_without_credentials_is_skipped():
    result = runner.invoke(app, ["sync", "u1"])
    assert result.exit_code == 0
    assert "no valid platforms" in result.output


def test_webhook_before_initial_sync():
    result = runner.invoke(app, ["webhook", "u1", "gmail", "--cursor", "10"])
    assert result.exit_code == 0
    assert "initial sync required" in result.output


def test_contacts_import_list_show_and_match():
    assert "No contacts." in runner.invoke(app, ["contacts", "list", "u1"]).output

    result = runner.invoke(app, [
        "contacts", "import", "u1", "slack",
        "--id", "U1", "--name", "Alice Smith", "--email", "alice@acme.com", "--handle", "alice",
    ])
    assert result.exit_code == 0
    contact_id = re.search(r"auto_created_new: contact=(\S+)", result.output).group(1)

    listed = runner.invoke(app, ["contacts", "list", "u1"]).output
    assert contact_id in listed and "[slack]" in listed

    shown = runner.invoke(app, ["contacts", "show", "u1", contact_id])
    assert "Alice Smith <alice@acme.com>" in shown.output
    assert "U1" in shown.output

    matched = runner.invoke(app, ["contacts", "match", "u1", "gmail", "--email", "alice@acme.com"])
    assert f"{contact_id}  100  email_exact_match" in matched.output


def test_contacts_import_rejects_bad_record():
    result = runner.invoke(app, ["contacts", "import", "u1", "teams", "--id", "T1"])
    assert result.exit_code == 2
    result = runner.invoke(app, ["contacts", "import", "u1", "gmail", "--name", "No Address"])
    assert result.exit_code == 2


def test_contacts_show_unknown():
    result = runner.invoke(app, ["contacts", "show", "u1", "nope"])
    assert result.exit_code == 1
    assert "contact_not_found" in result.output



def test_pending_list_empty():
    result = runner.invoke(app, ["pending", "list", "u1"])
    assert "No pending approvals." in result.output


def test_pending_decide_validates_input():
    result = runner.invoke(app, ["pending", "decide", "u1", "p1", "--decision", "maybe"])
    assert result.exit_code == 2
    result = runner.invoke(app, ["pending", "decide", "u1", "p1", "--decision", "approve_merge"])
    assert result.exit_code == 2
    assert "--target" in result.output


def test_pending_decide_unknown():
    result = runner.invoke(app, ["pending", "decide", "u1", "p1", "--decision", "reject"])
    assert result.exit_code == 1
    assert "pending_not_found" in result.output


def test_threads_empty():
    result = runner.invoke(app, ["threads", "u1"])
    assert "No messages." in result.output


def test_reset_sync_and_stuck():
    result = runner.invoke(app, ["reset-sync", "u1", "gmail"])
    assert result.exit_code == 0
    assert "initial" in result.output
    result = runner.invoke(app, ["reset-sync", "--stuck"])
    assert "No stuck sync runs." in result.output


def test_blacklist_commands():
    result = runner.invoke(app, ["blacklist", "list", "u1"])
    assert "Blacklist is empty." in result.output
    result = runner.invoke(app, ["blacklist", "remove", "u1", "nope"])
    assert result.exit_code == 1


def test_web_starts_uvicorn_factory():
    with patch("uvicorn.run") as run:
        result = runner.invoke(app, ["web", "--port", "9000"])
    assert result.exit_code == 0
    args, kwargs = run.call_args
    assert args[0] == "crosswire.web.app:create_app"
    assert kwargs["factory"] is True
    assert kwargs["port"] == 9000
