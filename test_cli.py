#!/usr/bin/env python3
"""
Tests for the command-line interface: output, JSON mode and exit codes.
"""

import json

import pytest

from jobscheduler.cli import build_parser, main


@pytest.fixture
def run_cli(tmp_path, capsys):
    def run(*argv):
        code = main(["-w", str(tmp_path), *argv])
        captured = capsys.readouterr()
        return code, captured.out, captured.err
    return run


def test_init_creates_workspace_files(run_cli, tmp_path):
    code, out, _ = run_cli("init")
    assert code == 0
    assert (tmp_path / ".jobscheduler" / "config.json").exists()
    assert (tmp_path / ".jobscheduler" / "HEARTBEAT.md").exists()
    assert (tmp_path / ".jobscheduler" / "jobs.db").exists()
    assert "Initialized" in out


def test_add_list_status(run_cli):
    code, out, _ = run_cli("add", "backup", "--schedule", "6h", "--command", "echo backup")
    assert code == 0
    assert "backup" in out

    code, out, _ = run_cli("list")
    assert code == 0
    assert "[enabled] backup (6h)" in out

    code, out, _ = run_cli("--json", "status", "backup")
    payload = json.loads(out)
    assert payload["ok"] is True
    assert payload["data"]["command"] == "echo backup"
    assert payload["data"]["enabled"] is True


def test_add_missing_command_is_invalid_input(run_cli):
    code, out, _ = run_cli("--json", "add", "backup", "--schedule", "5m")
    assert code == 2
    payload = json.loads(out)
    assert payload["ok"] is False
    assert payload["error"]["code"] == "invalid_input"
    assert payload["error"]["details"] == {"fields": ["command"]}


def test_add_duplicate_is_conflict(run_cli):
    run_cli("add", "backup", "-s", "5m", "-c", "true")
    code, _, err = run_cli("add", "backup", "-s", "5m", "-c", "true")
    assert code == 4
    assert "already exists" in err


def test_unknown_job_is_not_found(run_cli):
    assert run_cli("status", "ghost")[0] == 3
    assert run_cli("enable", "ghost")[0] == 3
    assert run_cli("logs", "ghost")[0] == 3
    assert run_cli("remove", "ghost", "--force")[0] == 3


def test_enable_disable_and_active_filter(run_cli):
    run_cli("add", "one", "-s", "5m", "-c", "true")
    run_cli("add", "two", "-s", "5m", "-c", "true")
    assert run_cli("disable", "one")[0] == 0

    _, out, _ = run_cli("--json", "list", "--active")
    assert [job["name"] for job in json.loads(out)["data"]] == ["two"]

    assert run_cli("enable", "one")[0] == 0
    _, out, _ = run_cli("--json", "list", "--active")
    assert len(json.loads(out)["data"]) == 2


def test_remove_requires_force(run_cli):
    run_cli("add", "backup", "-s", "5m", "-c", "true")
    assert run_cli("remove", "backup")[0] == 2
    assert run_cli("remove", "backup", "--force")[0] == 0
    assert run_cli("status", "backup")[0] == 3


def test_edit(run_cli):
    run_cli("add", "backup", "-s", "5m", "-c", "true")
    code, _, _ = run_cli("edit", "backup", "--schedule", "1h", "--command", "echo edited")
    assert code == 0

    _, out, _ = run_cli("--json", "status", "backup")
    data = json.loads(out)["data"]
    assert data["schedule"] == "1h"
    assert data["command"] == "echo edited"

    assert run_cli("edit", "backup", "--schedule", "never")[0] == 2


def test_run_and_logs(run_cli):
    run_cli("add", "greet", "-s", "1h", "-c", "echo hello")
    code, out, _ = run_cli("run", "greet")
    assert code == 0
    assert "success" in out
    assert "hello" in out

    run_cli("add", "broken", "-s", "1h", "-c", "exit 5")
    assert run_cli("run", "broken")[0] == 1

    code, out, _ = run_cli("--json", "logs", "greet", "--limit", "5")
    assert code == 0
    entries = json.loads(out)["data"]
    assert len(entries) == 1
    assert entries[0]["output"] == "hello"


def test_daemon_status_when_stopped(run_cli):
    code, out, _ = run_cli("--json", "daemon", "status")
    assert code == 0
    assert json.loads(out)["data"] == {"running": False, "pid": None}


def test_no_command_prints_help(run_cli):
    code, out, _ = run_cli()
    assert code == 1
    assert "usage" in out.lower()


def test_pause_resume_and_history_aliases(run_cli):
    run_cli("add", "greet", "-s", "1h", "-c", "echo hello")

    assert run_cli("pause", "greet")[0] == 0
    _, out, _ = run_cli("--json", "status", "greet")
    assert json.loads(out)["data"]["enabled"] is False

    assert run_cli("resume", "greet")[0] == 0
    _, out, _ = run_cli("--json", "status", "greet")
    assert json.loads(out)["data"]["enabled"] is True

    run_cli("run", "greet")
    code, out, _ = run_cli("--json", "history", "greet")
    assert code == 0
    assert [entry["output"] for entry in json.loads(out)["data"]] == ["hello"]


def test_job_command_option_does_not_replace_subcommand():
    args = build_parser().parse_args(["add", "x", "-s", "5m", "-c", "echo hi"])
    assert args.command == "add"
    assert args.job_command == "echo hi"


def test_status_shows_run_count(run_cli):
    run_cli("add", "greet", "-s", "1h", "-c", "echo hello")
    run_cli("run", "greet")
    run_cli("run", "greet")

    code, out, _ = run_cli("status", "greet")
    assert code == 0
    assert "echo hello" in out
    assert "Runs:      2" in out
