from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from squire import config as config_module
from squire.main import squire
from squire.task.models import TaskStatus
from squire.task.store import TaskStore
from squire.worker import set_backend

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Task Commands"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch, backend):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("SQUIRE_TASKS_DIR", str(tmp_path / "tasks"))
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_cli")
    for name in ("GH_TOKEN", "SQUIRE_MAX_CONCURRENT", "SQUIRE_MAX_PER_REPO", "SQUIRE_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    set_backend(backend)
    return TaskStore(tmp_path / "tasks")


def _new(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(squire, ["new", "acme/app", "Fix the flaky test", *args])
    assert result.exit_code == 0, result.output
    match = re.search(r"id=(\w+)", result.output)
    assert match is not None
    return match.group(1)


def test_new_list_and_show(cli_env: TaskStore) -> None:
    runner = CliRunner()
    task_id = _new(runner, "--base-branch", "develop")

    listed = runner.invoke(squire, ["list", "--status", "pending"])
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output

    shown = runner.invoke(squire, ["show", task_id])
    assert shown.exit_code == 0, shown.output
    assert "Status: pending" in shown.output
    assert f"Branch: squire/{task_id} (base develop)" in shown.output
    assert "  Fix the flaky test" in shown.output


def test_show_unknown_task_fails(cli_env: TaskStore) -> None:
    result = CliRunner().invoke(squire, ["show", "nope"])

    assert result.exit_code == 1
    assert "Task not found: nope" in result.output


def test_start_logs_stop_and_delete(cli_env: TaskStore, backend) -> None:
    runner = CliRunner()
    task_id = _new(runner)

    started = runner.invoke(squire, ["start", task_id])
    assert started.exit_code == 0, started.output
    assert f"Task started: id={task_id}" in started.output
    handle = cli_env.get(task_id).container_id
    assert handle is not None
    assert backend.started[0].github_token == "ghp_cli"

    backend.logs[handle] = "cloning\nrunning agent\npushing"
    logs = runner.invoke(squire, ["logs", task_id, "--tail", "1"])
    assert logs.exit_code == 0, logs.output
    assert "pushing" in logs.output
    assert "cloning" not in logs.output

    stopped = runner.invoke(squire, ["stop", task_id])
    assert stopped.exit_code == 0, stopped.output
    assert cli_env.get(task_id).error == "Stopped by user"

    deleted = runner.invoke(squire, ["delete", task_id])
    assert deleted.exit_code == 0, deleted.output
    assert cli_env.get(task_id) is None
    assert backend.removed == [handle]


def test_start_requires_github_token(cli_env: TaskStore, monkeypatch) -> None:
    monkeypatch.delenv("GITHUB_TOKEN")
    monkeypatch.setattr(config_module, "_gh_auth_token", lambda: None)
    runner = CliRunner()
    task_id = _new(runner)

    result = runner.invoke(squire, ["start", task_id])

    assert result.exit_code == 1
    assert "GitHub token not configured" in result.output
    assert cli_env.get(task_id).status is TaskStatus.PENDING


def test_start_refused_at_capacity(cli_env: TaskStore, monkeypatch) -> None:
    monkeypatch.setenv("SQUIRE_MAX_CONCURRENT", "1")
    runner = CliRunner()
    first = _new(runner, "--start")
    second = _new(runner)

    result = runner.invoke(squire, ["start", second])

    assert cli_env.get(first).status is TaskStatus.RUNNING
    assert result.exit_code == 1
    assert "1/1 tasks running" in result.output
    assert cli_env.get(second).status is TaskStatus.PENDING


def test_watch_once_starts_pending_tasks(cli_env: TaskStore) -> None:
    runner = CliRunner()
    task_id = _new(runner)

    result = runner.invoke(squire, ["watch", "--once"])

    assert result.exit_code == 0, result.output
    assert f"▶ Starting {task_id} (1/5)..." in result.output
    assert "Watch summary: cycles=1" in result.output
    assert cli_env.get(task_id).status is TaskStatus.RUNNING


def test_watch_no_auto_start_leaves_tasks_pending(cli_env: TaskStore) -> None:
    runner = CliRunner()
    task_id = _new(runner)

    result = runner.invoke(squire, ["watch", "--once", "--no-auto-start"])

    assert result.exit_code == 0, result.output
    assert "started=0" in result.output
    assert cli_env.get(task_id).status is TaskStatus.PENDING


def test_reconcile_dry_run(cli_env: TaskStore, backend) -> None:
    backend.add_worker("stray", "deleted-task")

    result = CliRunner().invoke(squire, ["reconcile", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "Reconcile (dry run): reconciled=0" in result.output
    assert "orphans_removed=1" in result.output
    assert "stray" in backend.workers


def test_metrics_and_health(cli_env: TaskStore) -> None:
    runner = CliRunner()
    _new(runner)

    metrics = runner.invoke(squire, ["metrics"])
    assert metrics.exit_code == 0, metrics.output
    assert "# TYPE squire_tasks_total gauge" in metrics.output
    assert "squire_tasks_total 1" in metrics.output
    assert "squire_tasks_created_total 1" in metrics.output

    health = runner.invoke(squire, ["health", "--format", "json"])
    assert health.exit_code == 0, health.output
    payload = json.loads(health.output)
    assert payload["status"] == "healthy"
    assert payload["checks"]["taskStore"]["status"] == "pass"


def test_version_and_log_level(cli_env: TaskStore) -> None:
    runner = CliRunner()

    assert "squire" in runner.invoke(squire, ["--version"]).output
    result = runner.invoke(squire, ["--log-level", "debug", "list"])
    assert result.exit_code == 0, result.output


def test_configured_log_level_is_validated(cli_env: TaskStore, monkeypatch) -> None:
    runner = CliRunner()
    monkeypatch.setenv("SQUIRE_LOG_LEVEL", "info")
    assert runner.invoke(squire, ["list"]).exit_code == 0

    Path("squire.config.json").write_text(json.dumps({"logLevel": "loud"}), "utf-8")
    result = runner.invoke(squire, ["list"])

    assert result.exit_code == 1
    assert "SQUIRE_LOG_LEVEL must be one of" in result.output
