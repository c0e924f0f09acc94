"""
Run 审计记录

AgentRun 为 pydantic 模型，每次变更后整体写入
<state_dir>/agent-runs/<task_id>/<run_id>.json（camelCase）。
写入前对工具参数、命令、错误做脱敏和截断。
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .policy import REDACTION_MARKER, redact_secrets, safe_path_component
from .types import RunStatus, generate_run_id

logger = logging.getLogger(__name__)

OUTPUT_SUMMARY_LIMIT = 500
DIFF_SUMMARY_LIMIT = 300
SUMMARY_LIMIT = 1000
ERROR_LIMIT = 500

SENSITIVE_KEY_PARTS = ("password", "secret", "token", "key", "credential", "auth")


def _now() -> str:
    return datetime.now().isoformat()


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


def redact_object(value: Any, redactor: Callable[[str], str] = redact_secrets) -> Any:
    """递归脱敏：敏感键整体替换，字符串值做模式替换"""
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS):
                result[key] = REDACTION_MARKER
            else:
                result[key] = redact_object(item, redactor)
        return result
    if isinstance(value, list):
        return [redact_object(item, redactor) for item in value]
    if isinstance(value, str):
        # 孤立的代理字符无法写入 JSON
        return redactor(value.encode("utf-8", errors="replace").decode("utf-8"))
    return value


# ============================================
# 记录模型
# ============================================

class _RecordModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AcceptanceResult(_RecordModel):
    """单条验收标准的结果"""
    criterion: str
    passed: bool
    evidence: str = ""


class ToolCallRecord(_RecordModel):
    timestamp: str = Field(default_factory=_now)
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    output_summary: str = ""
    duration_ms: int = 0


class PatchRecord(_RecordModel):
    timestamp: str = Field(default_factory=_now)
    path: str
    diff_summary: str = ""
    lines_added: int = 0
    lines_removed: int = 0


class CommandRecord(_RecordModel):
    timestamp: str = Field(default_factory=_now)
    command: str
    exit_code: Optional[int] = None
    duration_ms: int = 0
    output_path: Optional[str] = None
    timed_out: bool = False


class AgentRun(_RecordModel):
    """一次 Run 的完整审计记录"""
    id: str = Field(default_factory=generate_run_id)
    task_id: str
    mode: str = "dexter"
    started_at: str = Field(default_factory=_now)
    completed_at: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    steps: int = 0
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    patches: List[PatchRecord] = Field(default_factory=list)
    commands: List[CommandRecord] = Field(default_factory=list)
    files_modified: List[str] = Field(default_factory=list)
    acceptance_results: Optional[List[AcceptanceResult]] = None
    summary: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING


# ============================================
# 记录器
# ============================================

class AuditRecorder(ABC):
    """审计记录器接口"""

    @abstractmethod
    def start(self, task_id: str, mode: str = "dexter") -> AgentRun:
        pass

    @abstractmethod
    def record_step(self, step: int) -> None:
        pass

    @abstractmethod
    def record_tool_call(self, name: str, input: Dict[str, Any], output_summary: str, duration_ms: int) -> None:
        pass

    @abstractmethod
    def record_patch(self, path: str, diff_summary: str, lines_added: int, lines_removed: int) -> None:
        pass

    @abstractmethod
    def record_command(
        self,
        command: str,
        exit_code: Optional[int],
        duration_ms: int,
        output_path: Optional[str],
        timed_out: bool = False,
    ) -> None:
        pass

    @abstractmethod
    def finalize(
        self,
        status: RunStatus,
        summary: str,
        error: Optional[str] = None,
        acceptance_results: Optional[List[AcceptanceResult]] = None,
    ) -> AgentRun:
        pass

    @abstractmethod
    def cancel(self, reason: str) -> Optional[AgentRun]:
        pass

    @abstractmethod
    def get_current_run(self) -> Optional[AgentRun]:
        pass

    def get_run_path(self, task_id: str, run_id: str) -> Optional[Path]:
        """持久化位置，写入失败评论时引用；不落盘的记录器返回 None"""
        return None


class RunRecorder(AuditRecorder):
    """把 AgentRun 持久化为 JSON 的记录器"""

    def __init__(self, state_dir: Union[str, Path], redactor: Callable[[str], str] = redact_secrets):
        self.state_dir = Path(state_dir)
        self.redactor = redactor
        self._current: Optional[AgentRun] = None

    def get_run_path(self, task_id: str, run_id: str) -> Path:
        task_dir = self.state_dir / "agent-runs" / safe_path_component(task_id, "task id")
        return task_dir / f"{safe_path_component(run_id, 'run id')}.json"

    def _require_run(self) -> AgentRun:
        if self._current is None:
            raise RuntimeError("No active run. Call start() first.")
        return self._current

    def _save(self) -> None:
        run = self._current
        if run is None:
            return
        path = self.get_run_path(run.task_id, run.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_text(run.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        temp_path.replace(path)

    def start(self, task_id: str, mode: str = "dexter") -> AgentRun:
        safe_path_component(task_id, "task id")
        self._current = AgentRun(task_id=task_id, mode=mode)
        logger.info("Started run %s for task %s", self._current.id, task_id)
        self._save()
        return self._current

    def get_current_run(self) -> Optional[AgentRun]:
        return self._current

    def record_step(self, step: int) -> None:
        run = self._require_run()
        run.steps = step
        self._save()

    def record_tool_call(self, name: str, input: Dict[str, Any], output_summary: str, duration_ms: int) -> None:
        run = self._require_run()
        run.tool_calls.append(ToolCallRecord(
            name=name,
            input=redact_object(input, self.redactor),
            output_summary=truncate(self.redactor(output_summary), OUTPUT_SUMMARY_LIMIT),
            duration_ms=duration_ms,
        ))
        self._save()

    def record_patch(self, path: str, diff_summary: str, lines_added: int, lines_removed: int) -> None:
        run = self._require_run()
        run.patches.append(PatchRecord(
            path=path,
            diff_summary=truncate(self.redactor(diff_summary), DIFF_SUMMARY_LIMIT),
            lines_added=lines_added,
            lines_removed=lines_removed,
        ))
        if path not in run.files_modified:
            run.files_modified.append(path)
        self._save()

    def record_command(
        self,
        command: str,
        exit_code: Optional[int],
        duration_ms: int,
        output_path: Optional[str],
        timed_out: bool = False,
    ) -> None:
        run = self._require_run()
        run.commands.append(CommandRecord(
            command=self.redactor(command),
            exit_code=exit_code,
            duration_ms=duration_ms,
            output_path=output_path,
            timed_out=timed_out,
        ))
        self._save()

    def finalize(
        self,
        status: RunStatus,
        summary: str,
        error: Optional[str] = None,
        acceptance_results: Optional[List[AcceptanceResult]] = None,
    ) -> AgentRun:
        """以明确的终态结束 Run；之后不能再记录"""
        run = self._require_run()
        if status == RunStatus.RUNNING:
            raise ValueError("finalize requires a terminal status")

        run.completed_at = _now()
        run.status = status
        run.summary = truncate(self.redactor(summary), SUMMARY_LIMIT)
        if acceptance_results is not None:
            run.acceptance_results = list(acceptance_results)
        if error:
            run.error = truncate(self.redactor(error), ERROR_LIMIT)

        self._save()
        logger.info("Run %s finalized as %s", run.id, status.value)
        self._current = None
        return run

    def cancel(self, reason: str) -> Optional[AgentRun]:
        if self._current is None:
            return None
        return self.finalize(RunStatus.CANCELLED, summary="Run cancelled", error=reason)

    def load_run(self, task_id: str, run_id: str) -> Optional[AgentRun]:
        path = self.get_run_path(task_id, run_id)
        if not path.exists():
            return None
        try:
            return AgentRun.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.warning("Invalid run record %s: %s", path, e)
            return None

    def list_runs(self, task_id: str) -> List[AgentRun]:
        """某个任务的所有 Run，最新的在前"""
        run_dir = self.state_dir / "agent-runs" / safe_path_component(task_id, "task id")
        if not run_dir.exists():
            return []
        runs = []
        for path in run_dir.glob("*.json"):
            run = self.load_run(task_id, path.stem)
            if run is not None:
                runs.append(run)
        return sorted(runs, key=lambda r: r.started_at, reverse=True)
