"""
测试用例 - Run 审计记录
"""
import json

import pytest

from nano_dexter.core.errors import PolicyViolation
from nano_dexter.core.recorder import AcceptanceResult, RunRecorder, redact_object, truncate
from nano_dexter.core.types import RunStatus


class TestHelpers:

    def test_truncate(self):
        assert truncate("short", 10) == "short"
        assert truncate("x" * 20, 10) == "xxxxxxx..."

    def test_redact_object(self):
        data = {
            "apiKey": "sk-123",
            "nested": {"authHeader": "abc", "cmd": "deploy password=hunter2"},
            "items": ["token=zzz", 3],
            "path": "src/app.py",
        }
        redacted = redact_object(data)
        assert redacted["apiKey"] == "[REDACTED]"
        assert redacted["nested"]["authHeader"] == "[REDACTED]"
        assert "hunter2" not in redacted["nested"]["cmd"]
        assert redacted["items"][0] == "[REDACTED]"
        assert redacted["items"][1] == 3
        assert redacted["path"] == "src/app.py"


class TestRunRecorder:
    """测试 RunRecorder"""

    @pytest.fixture(autouse=True)
    def _setup(self, tmp_path):
        self.state_dir = tmp_path / "state"
        self.recorder = RunRecorder(self.state_dir)

    def _read(self, run):
        path = self.state_dir / "agent-runs" / run.task_id / f"{run.id}.json"
        return json.loads(path.read_text(encoding="utf-8"))

    def test_requires_start(self):
        with pytest.raises(RuntimeError, match="No active run"):
            self.recorder.record_step(1)

    def test_full_lifecycle_persists_camel_case(self):
        run = self.recorder.start("task-1")
        assert run.id.startswith("run-")
        assert self.recorder.get_current_run() is run

        self.recorder.record_step(1)
        self.recorder.record_tool_call("read_file", {"path": "src/app.py"}, "File contents:\n...", 12)
        self.recorder.record_patch("src/app.py", "+x", 1, 0)
        self.recorder.record_patch("src/app.py", "+y", 1, 0)
        self.recorder.record_command("pytest", 0, 1500, "/tmp/log", timed_out=False)

        data = self._read(run)
        assert data["taskId"] == "task-1"
        assert data["status"] == "running"
        assert data["toolCalls"][0]["durationMs"] == 12
        assert data["filesModified"] == ["src/app.py"]
        assert data["commands"][0]["exitCode"] == 0

        results = [AcceptanceResult(criterion="works", passed=True, evidence="tests")]
        final = self.recorder.finalize(RunStatus.COMPLETE, "done", acceptance_results=results)
        assert final.is_terminal
        assert self.recorder.get_current_run() is None

        data = self._read(run)
        assert data["status"] == "complete"
        assert data["completedAt"] is not None
        assert data["acceptanceResults"] == [{"criterion": "works", "passed": True, "evidence": "tests"}]

    def test_inputs_redacted_and_truncated(self):
        run = self.recorder.start("task-1")
        self.recorder.record_tool_call(
            "run_command",
            {"cmd": "deploy --token=abc123", "secretValue": "x"},
            "y" * 2000,
            5,
        )
        self.recorder.record_command("login password=pw1", 1, 10, None)

        data = self._read(run)
        call = data["toolCalls"][0]
        assert "abc123" not in call["input"]["cmd"]
        assert call["input"]["secretValue"] == "[REDACTED]"
        assert len(call["outputSummary"]) == 500
        assert "pw1" not in data["commands"][0]["command"]

    def test_finalize_requires_terminal_status(self):
        self.recorder.start("task-1")
        with pytest.raises(ValueError):
            self.recorder.finalize(RunStatus.RUNNING, "nope")

    def test_finalize_truncates_error(self):
        self.recorder.start("task-1")
        run = self.recorder.finalize(RunStatus.FAILED, "Failed", error="e" * 900)
        assert len(run.error) == 500
        assert run.error.endswith("...")

    def test_cancel(self):
        assert self.recorder.cancel("nothing running") is None
        self.recorder.start("task-1")
        run = self.recorder.cancel("user pressed ctrl-c")
        assert run.status == RunStatus.CANCELLED
        assert run.error == "user pressed ctrl-c"

    def test_load_and_list_runs(self):
        first = self.recorder.start("task-1")
        self.recorder.finalize(RunStatus.FAILED, "first", error="boom")
        second = self.recorder.start("task-1")
        self.recorder.finalize(RunStatus.COMPLETE, "second")

        loaded = self.recorder.load_run("task-1", first.id)
        assert loaded.status == RunStatus.FAILED
        assert loaded.error == "boom"

        runs = self.recorder.list_runs("task-1")
        assert [r.id for r in runs] == [second.id, first.id]
        assert self.recorder.list_runs("task-2") == []
        assert self.recorder.load_run("task-1", "run-missing") is None

    def test_invalid_record_is_skipped(self):
        bad = self.state_dir / "agent-runs" / "task-1" / "run-bad.json"
        bad.parent.mkdir(parents=True)
        bad.write_text('{"id": "run-bad"}', encoding="utf-8")
        assert self.recorder.load_run("task-1", "run-bad") is None
        assert self.recorder.list_runs("task-1") == []

    def test_ids_must_be_single_path_component(self):
        with pytest.raises(PolicyViolation):
            self.recorder.load_run("task-1", "../run-x")
        with pytest.raises(PolicyViolation):
            self.recorder.list_runs("..")
        with pytest.raises(PolicyViolation):
            self.recorder.start("../task-1")
        assert self.recorder.get_current_run() is None

    def test_lone_surrogate_in_input_is_persisted(self):
        run = self.recorder.start("task-1")
        self.recorder.record_tool_call("write_file", {"path": "src/a.py", "content": "x = '\ud800'"}, "Error", 1)

        data = self._read(run)
        assert data["toolCalls"][0]["input"]["content"] == "x = '?'"
