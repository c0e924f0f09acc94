"""
Agent Loop - 任务执行的步进循环

execute(task_id) 驱动一次有界的 Run：
每一步先检查运行限额，再向 Provider 请求下一步动作，
按顺序执行工具调用并把结果写回对话，直到终止型工具、限额、取消或步数耗尽。
每一步返回明确的 StepOutcome，循环把意外异常折叠为 Failed。
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from .cancellation import CancellationToken
from .errors import NanoDexterError, OperationCancelled, TaskNotRunnableError
from .llm_client import Provider
from .policy import Policy, PolicyEngine, RuntimeStats
from .recorder import AgentRun, AuditRecorder, RunRecorder
from .task_store import TaskStore
from .types import (
    AgentEvent, Comment, EventHandler, EventType, FinishReason, LoopState,
    Message, RunResult, RunStatus, StopData, StopReason, Task, ToolExecutionResult,
)
from ..tools.base import ToolContext, ToolRegistry
from ..tools.builtin import register_builtin_tools
from ..tools.file_ops import SandboxedFileOps
from ..tools.runner import DEFAULT_KILL_GRACE_SEC, DEFAULT_TIMEOUT_SEC, ProcessRunner

logger = logging.getLogger(__name__)

AGENT_AUTHOR = "dexter"

DEFAULT_SYSTEM_PROMPT = """You are Dexter, an AI agent executing tasks in a software project.

Your capabilities:
- List, read and search files in the project
- Write files and apply unified diff patches
- Run allow-listed shell commands (no pipes, redirection, chaining or substitution)

Your constraints:
- Only modify files allowed by the project policy
- Verify every acceptance criterion before calling task_complete
- Call task_blocked when you need a human decision, task_failed when the task cannot be done"""

FINISH_REMINDER = (
    "Continue working on the task. When you are done, call task_complete with a result "
    "for every acceptance criterion, or call task_blocked / task_failed."
)


@dataclass
class AgentConfig:
    """Agent配置"""
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_steps: Optional[int] = None
    command_timeout_sec: float = DEFAULT_TIMEOUT_SEC
    kill_grace_sec: float = DEFAULT_KILL_GRACE_SEC
    mode: str = "dexter"


class OutcomeKind(Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepOutcome:
    """单步结果：继续，或某个终态及其原因"""
    kind: OutcomeKind
    reason: Optional[str] = None
    stop_data: StopData = field(default_factory=StopData)

    @property
    def is_terminal(self) -> bool:
        return self.kind != OutcomeKind.CONTINUE

    @classmethod
    def proceed(cls) -> "StepOutcome":
        return cls(OutcomeKind.CONTINUE)

    @classmethod
    def failed(cls, reason: str, next_steps: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeKind.FAILED, reason, StopData(reason=reason, next_steps=next_steps))

    @classmethod
    def cancelled(cls) -> "StepOutcome":
        return cls(OutcomeKind.CANCELLED, "Cancelled")

    @classmethod
    def from_tool(cls, result: ToolExecutionResult) -> "StepOutcome":
        data = result.stop_data or StopData()
        if result.stop_reason == StopReason.COMPLETE:
            return cls(OutcomeKind.COMPLETE, None, data)
        if result.stop_reason == StopReason.BLOCKED:
            return cls(OutcomeKind.BLOCKED, data.reason, data)
        return cls(OutcomeKind.FAILED, data.reason or "Task failed", data)


class EventBus:
    """事件总线 - 解耦组件通信"""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}

    def on(self, event_type: str, handler: EventHandler) -> None:
        """订阅事件"""
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        """取消订阅"""
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    async def emit(self, event: AgentEvent) -> None:
        """发布事件；订阅者出错不影响循环"""
        for handler in list(self._handlers.get(event.type, [])):
            try:
                await handler(event)
            except Exception:
                logger.exception("Error in event handler for %s", event.type)


def build_task_prompt(task: Task) -> str:
    """任务描述 + 验收标准 + 上一次失败的说明"""
    lines = [f"# Task: {task.title}", ""]
    if task.description:
        lines += [task.description, ""]
    lines.append("## Acceptance Criteria")
    lines += [f"{i}. {criterion}" for i, criterion in enumerate(task.acceptance_criteria, start=1)]

    failures = [c for c in task.comments if c.kind == "failure"]
    instructions = [c for c in task.comments if c.kind == "instruction"]
    if failures:
        lines += ["", f"## Retry Context (Attempt {len(failures) + 1})", "", failures[-1].content]
    if instructions:
        lines += ["", "## Instructions from the user", ""]
        lines += [f"- {c.content}" for c in instructions]
    return "\n".join(lines)


class AgentOrchestrator:
    """
    Agent主循环

    一个实例同一时间只执行一个 Run；touched 文件集合、步数、取消令牌都归该 Run 独有。
    """

    def __init__(
        self,
        project_root: Union[str, Path],
        policy: Policy,
        provider: Provider,
        task_store: TaskStore,
        state_dir: Optional[Union[str, Path]] = None,
        recorder: Optional[AuditRecorder] = None,
        config: Optional[AgentConfig] = None,
        runner: Optional[ProcessRunner] = None,
        registry: Optional[ToolRegistry] = None,
    ):
        self.config = config or AgentConfig()
        self.engine = PolicyEngine(project_root, policy)
        self.state_dir = Path(state_dir) if state_dir else Path(self.engine.project_root) / ".nano_dexter"
        self.provider = provider
        self.task_store = task_store

        # 组件
        self.file_ops = SandboxedFileOps(self.engine)
        self.runner = runner or ProcessRunner(
            self.engine,
            self.state_dir,
            default_timeout_sec=self.config.command_timeout_sec,
            kill_grace_sec=self.config.kill_grace_sec,
        )
        self.recorder = recorder or RunRecorder(self.state_dir, self.engine.redact_secrets)
        self.registry = registry or register_builtin_tools(ToolRegistry())
        self.event_bus = EventBus()

        # 状态
        self.state = LoopState.IDLE
        self._cancel_token: Optional[CancellationToken] = None
        self._start_time = 0.0

    # ============================================
    # 公共接口
    # ============================================

    @property
    def current_run(self) -> Optional[AgentRun]:
        return self.recorder.get_current_run()

    def is_running(self) -> bool:
        return self.recorder.get_current_run() is not None

    def cancel(self, reason: str = "Task execution cancelled by user") -> None:
        """请求取消：下一个检查点生效，并终止在途的命令"""
        if self._cancel_token is not None:
            self._cancel_token.cancel(reason)
        self.runner.cancel_all()

    def _check_runnable(self, task_id: str) -> Task:
        task = self.task_store.get_task(task_id)
        if task is None:
            raise TaskNotRunnableError(f"Task not found: {task_id}")
        if task.human_only:
            raise TaskNotRunnableError(f"Task {task_id} is marked human-only and cannot be run by the agent")
        if not task.acceptance_criteria:
            raise TaskNotRunnableError(f"Task {task_id} has no acceptance criteria")
        return task

    async def execute(self, task_id: str, max_steps: Optional[int] = None) -> RunResult:
        """
        执行任务直到终态

        前置条件不满足时在任何模型调用之前抛出 TaskNotRunnableError；
        Run 记录一旦创建，之后的所有错误都折叠为 RunResult。
        """
        task = self._check_runnable(task_id)
        if self.is_running():
            raise NanoDexterError("Orchestrator is already executing a run")

        token = CancellationToken()
        self._cancel_token = token
        self.file_ops.reset_session()
        self._start_time = time.time()
        run = self.recorder.start(task.id, self.config.mode)

        context = ToolContext(
            file_ops=self.file_ops,
            runner=self.runner,
            task_id=task.id,
            run_id=run.id,
            recorder=self.recorder,
            cancel_token=token,
            command_timeout_sec=self.config.command_timeout_sec,
        )
        messages = [
            Message(role="system", content=self.config.system_prompt),
            Message(role="user", content=build_task_prompt(task)),
        ]
        effective_max_steps = max_steps or self.config.max_steps or self.engine.limits.max_steps_per_run

        await self._set_state(LoopState.RUNNING)
        logger.info("Executing task %s as run %s (max %d steps)", task.id, run.id, effective_max_steps)

        outcome = StepOutcome.failed(f"Maximum steps ({effective_max_steps}) reached without completion")
        try:
            for step in range(1, effective_max_steps + 1):
                try:
                    step_outcome = await self._step(step, messages, context, token)
                except OperationCancelled:
                    step_outcome = StepOutcome.cancelled()
                except Exception as e:
                    logger.exception("Step %d of run %s raised", step, run.id)
                    message = str(e) or type(e).__name__
                    await self.event_bus.emit(AgentEvent(
                        type=EventType.ERROR,
                        data={"step": step, "error": message},
                    ))
                    step_outcome = StepOutcome.failed(message)
                if step_outcome.is_terminal:
                    outcome = step_outcome
                    break
        except asyncio.CancelledError:
            self.runner.cancel_all()
            await self._finalize(task, StepOutcome.cancelled())
            raise
        finally:
            self._cancel_token = None

        return await self._finalize(task, outcome)

    # ============================================
    # 单步
    # ============================================

    async def _step(
        self,
        step: int,
        messages: List[Message],
        context: ToolContext,
        token: CancellationToken,
    ) -> StepOutcome:
        if token.cancelled:
            return StepOutcome.cancelled()

        await self.event_bus.emit(AgentEvent(type=EventType.STEP, data={"step": step}))
        self.recorder.record_step(step)

        # 1. 运行限额
        runtime_check = self.engine.enforce_runtime_limits(RuntimeStats(
            start_time=self._start_time,
            steps_executed=step,
            files_touched=self.file_ops.get_touched_files(),
        ))
        if not runtime_check.allowed:
            logger.warning("Runtime limit hit: %s", runtime_check.reason)
            return StepOutcome.failed(runtime_check.reason or "Runtime limit exceeded")

        # 2. 请求下一步动作
        response = await token.race(self.provider.complete(messages, self.registry.get_all_schemas()))
        content = response.content or ""
        messages.append(Message(role="assistant", content=content, tool_calls=response.tool_calls or None))
        await self.event_bus.emit(AgentEvent(
            type=EventType.MESSAGE,
            data={"role": "assistant", "content": content, "finish_reason": response.finish_reason.value},
        ))

        # 3. finish reason
        if response.finish_reason == FinishReason.ERROR:
            detail = f": {response.error}" if response.error else ""
            return StepOutcome.failed(f"Agent provider error{detail}")
        if response.finish_reason == FinishReason.LENGTH:
            return StepOutcome.failed("Agent response exceeded max length")
        if not response.tool_calls:
            if response.finish_reason == FinishReason.STOP and "complete" not in content.lower():
                return StepOutcome.failed("Agent stopped without completing the task")
            messages.append(Message(role="user", content=FINISH_REMINDER))
            return StepOutcome.proceed()

        # 4. 按顺序执行工具调用
        for call in response.tool_calls:
            if token.cancelled:
                return StepOutcome.cancelled()

            await self.event_bus.emit(AgentEvent(
                type=EventType.TOOL_CALL,
                data={"id": call.id, "name": call.name, "arguments": call.arguments},
            ))
            started = time.monotonic()
            result = await self.registry.dispatch(call, context)
            duration_ms = int((time.monotonic() - started) * 1000)

            self.recorder.record_tool_call(call.name, call.arguments, result.output, duration_ms)
            messages.append(Message(
                role="tool",
                content=f"Tool result for {call.name}:\n{result.output}",
                tool_call_id=call.id,
                name=call.name,
            ))
            await self.event_bus.emit(AgentEvent(
                type=EventType.TOOL_RESULT,
                data={"id": call.id, "name": call.name, "output": result.output, "duration_ms": duration_ms},
            ))

            if result.should_stop:
                return StepOutcome.from_tool(result)

        return StepOutcome.proceed()

    # ============================================
    # 终态处理
    # ============================================

    async def _set_state(self, state: LoopState) -> None:
        self.state = state
        await self.event_bus.emit(AgentEvent(type=EventType.STATE_CHANGE, data={"state": state.value}))

    def _comment(self, task: Task, kind: str, author: str, content: str, run_id: str) -> None:
        self.task_store.add_comment(task.id, Comment(
            kind=kind,
            author=author,
            content=self.engine.redact_secrets(content),
            run_id=run_id,
        ))

    async def _finalize(self, task: Task, outcome: StepOutcome) -> RunResult:
        """结束 Run：写记录、写一条评论、更新任务状态"""
        data = outcome.stop_data
        error: Optional[str] = None

        if outcome.kind == OutcomeKind.COMPLETE:
            results = data.acceptance_results
            summary = data.summary or "Task completed"
            run = self.recorder.finalize(RunStatus.COMPLETE, summary, acceptance_results=results)
            report = "\n".join(
                f"- [{'✓' if r.passed else '✗'}] {r.criterion}: {r.evidence}" for r in results
            )
            self._comment(
                task, "agent", AGENT_AUTHOR,
                f"Task completed successfully.\n\n**Summary:** {summary}\n\n**Acceptance Results:**\n{report}",
                run.id,
            )
            self.task_store.set_status(task.id, "done")
            state = LoopState.COMPLETE

        elif outcome.kind == OutcomeKind.BLOCKED:
            error = outcome.reason or "Blocked"
            run = self.recorder.finalize(RunStatus.BLOCKED, f"Blocked: {error}", error=error)
            self._comment(
                task, "failure", AGENT_AUTHOR,
                f"**Task Blocked**\n\n**Reason:** {error}\n\n**Question:** {data.question}\n\n"
                "*Please add an instruction comment to help me proceed.*",
                run.id,
            )
            state = LoopState.BLOCKED

        elif outcome.kind == OutcomeKind.CANCELLED:
            error = "Cancelled"
            run = self.recorder.cancel("Task execution cancelled by user")
            if run is None:
                run = self.recorder.finalize(
                    RunStatus.CANCELLED, "Run cancelled", error="Task execution cancelled by user"
                )
            self._comment(task, "system", "system", "Task execution was cancelled by user.", run.id)
            state = LoopState.CANCELLED

        else:
            error = outcome.reason or "Task failed"
            run = self.recorder.finalize(
                RunStatus.FAILED,
                f"Failed: {error}",
                error=error,
                acceptance_results=data.acceptance_results or None,
            )
            record_path = self.recorder.get_run_path(task.id, run.id)
            comment = f"**Task Failed**\n\n**Run ID:** {run.id}\n**Log Path:** {record_path}\n\n**Reason:** {error}"
            if data.next_steps:
                comment += f"\n\n**Suggested Next Steps:** {data.next_steps}"
            self._comment(task, "failure", AGENT_AUTHOR, comment, run.id)
            state = LoopState.FAILED

        success = outcome.kind == OutcomeKind.COMPLETE
        logger.info("Run %s ended: %s%s", run.id, run.status.value, f" ({error})" if error else "")

        await self._set_state(state)
        await self.event_bus.emit(AgentEvent(
            type=EventType.COMPLETION,
            data={"run_id": run.id, "status": run.status.value, "success": success, "error": error},
        ))

        return RunResult(
            success=success,
            run=run,
            task=self.task_store.get_task(task.id) or task,
            error=error,
        )
