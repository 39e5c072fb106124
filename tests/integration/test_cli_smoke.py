"""
phase-orchestrator — CLI subprocess smoke contracts

Purpose
- Exercise `python -m phase_orchestrator` plan/run/config as an operator would.
- Verify exit codes, JSON output, and the per-run JSON-lines log side effect.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

_WORKERS_MODULE = '''
from phase_orchestrator import CapabilityDescriptor, FindingReport, Severity, WorkerResult


class Echo:
    async def invoke(self, task_input):
        return WorkerResult.success({"capability": task_input.capability})


class StrictReview:
    async def invoke(self, task_input):
        return WorkerResult.success(
            {"approved": False},
            [FindingReport(severity=Severity.CRITICAL, description="no tests",
                           target_capability="develop")],
        )


def build():
    echo = Echo()
    return [
        CapabilityDescriptor(name="design", worker=echo, phase="design"),
        CapabilityDescriptor(name="develop", worker=echo, phase="development"),
        CapabilityDescriptor(name="review", worker=echo, phase="review"),
    ]


def strict():
    echo = Echo()
    return {"develop": echo, "review": StrictReview()}
'''

_GOAL = """
[goal]
name = "checkout"
required_capabilities = ["design", "develop", "review"]
dependency_hints = [["design", "develop"], ["develop", "review"]]
"""


def _run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    paths = [str(SRC_PATH), str(cwd)]
    if env.get("PYTHONPATH"):
        paths.append(env["PYTHONPATH"])
    env["PYTHONPATH"] = os.pathsep.join(paths)
    for name in list(env):
        if name.startswith("PHASE_"):
            env.pop(name)
    return subprocess.run(
        [sys.executable, "-m", "phase_orchestrator", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
        timeout=120,
    )


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "smoke_workers.py").write_text(_WORKERS_MODULE, encoding="utf-8")
    (tmp_path / "goal.toml").write_text(_GOAL, encoding="utf-8")
    return tmp_path


@pytest.mark.integration
def test_plan_json_lists_tasks_in_phase_order(workspace: Path) -> None:
    completed = _run_cli(
        workspace, "plan", "goal.toml", "--workers", "smoke_workers:build", "--json"
    )

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["command"] == "plan"
    assert payload["goal"] == "checkout"
    task_ids = [task["id"] for task in payload["tasks"]]
    assert task_ids == ["t01-design", "t02-develop", "t03-review"]
    assert payload["tasks"][2]["dependencies"] == ["t02-develop"]


@pytest.mark.integration
def test_run_writes_deliverable_and_run_log(workspace: Path) -> None:
    completed = _run_cli(
        workspace,
        "run",
        "goal.toml",
        "--workers",
        "smoke_workers:build",
        "--output",
        "out/deliverable.json",
    )

    assert completed.returncode == 0, completed.stderr
    deliverable = json.loads((workspace / "out" / "deliverable.json").read_text(encoding="utf-8"))
    assert deliverable["final_status"] == "succeeded"
    assert sorted(deliverable["artifacts"]) == ["design", "develop", "review"]

    log_path = workspace / "logs" / deliverable["run_id"] / "orchestrator.jsonl"
    events = [json.loads(line)["message"] for line in log_path.read_text().splitlines()]
    assert "scheduler_run_started" in events
    assert "deliverable_synthesized" in events


@pytest.mark.integration
def test_failed_run_exits_with_run_failed_code(workspace: Path) -> None:
    (workspace / "strict.json").write_text(
        json.dumps(
            {
                "name": "strict",
                "required_capabilities": ["develop", "review"],
                "dependency_hints": [["develop", "review"]],
                "retry_budget": 1,
            }
        ),
        encoding="utf-8",
    )

    completed = _run_cli(workspace, "run", "strict.json", "--workers", "smoke_workers:strict")

    assert completed.returncode == 1
    deliverable = json.loads(completed.stdout)
    assert deliverable["final_status"] == "failed"
    assert deliverable["failure_reason"] == "retry_budget_exhausted"
    assert "retry_budget_exhausted" in completed.stderr


@pytest.mark.integration
def test_config_errors_and_bad_goals_exit_with_config_error(workspace: Path) -> None:
    (workspace / "orchestrator.toml").write_text(
        "[engine]\nmax_concurrency = 0\n", encoding="utf-8"
    )
    bad_config = _run_cli(workspace, "config")
    assert bad_config.returncode == 2
    assert "engine.max_concurrency" in bad_config.stderr

    (workspace / "orchestrator.toml").unlink()
    missing_goal = _run_cli(workspace, "plan", "absent.toml", "--workers", "smoke_workers:build")
    assert missing_goal.returncode == 2
    assert "GoalValidationError" in missing_goal.stderr

    bad_workers = _run_cli(workspace, "plan", "goal.toml", "--workers", "smoke_workers")
    assert bad_workers.returncode == 2


@pytest.mark.integration
def test_config_command_prints_redacted_effective_config(workspace: Path) -> None:
    completed = _run_cli(workspace, "config", "--json")

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["config"]["engine"]["max_concurrency"] == 4
    assert payload["config"]["engine"]["phases"][0] == "design"
