"""
命令执行器 - 在沙箱策略下运行外部命令

每次执行：校验命令 -> 打开追加日志 -> 通过 /bin/sh -c 启动子进程（独立进程组）
-> 按行流式写日志 -> 超时/取消时 SIGTERM，宽限期后 SIGKILL -> 写尾部与元数据。

Runner 自己持有进程表，不使用模块级全局状态。
"""
import asyncio
import json
import logging
import os
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, TextIO, Tuple, Union

from ..core.cancellation import CancellationToken
from ..core.errors import NotFoundError, PolicyViolation
from ..core.policy import PolicyEngine, redact_secrets, safe_path_component
from ..core.types import generate_run_id

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 120
DEFAULT_KILL_GRACE_SEC = 5.0
SEPARATOR = "=" * 60
STDERR_PREFIX = "[STDERR] "
OUTPUT_TAIL_LINES = 200
STREAM_LIMIT = 1024 * 1024


@dataclass
class CommandResult:
    """一次命令执行的结果"""
    success: bool
    run_id: str
    exit_code: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False
    log_path: Optional[str] = None
    duration_ms: int = 0
    output: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "runId": self.run_id,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "cancelled": self.cancelled,
            "logPath": self.log_path,
            "durationMs": self.duration_ms,
            "error": self.error,
        }


@dataclass
class RunMetadata:
    """每次命令执行持久化的元数据（camelCase JSON）"""
    run_id: str
    task_id: str
    command: str
    cwd: str
    started_at: str
    log_path: str
    completed_at: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "taskId": self.task_id,
            "command": self.command,
            "cwd": self.cwd,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "logPath": self.log_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunMetadata":
        return cls(
            run_id=data["runId"],
            task_id=data["taskId"],
            command=data["command"],
            cwd=data["cwd"],
            started_at=data["startedAt"],
            log_path=data["logPath"],
            completed_at=data.get("completedAt"),
            exit_code=data.get("exitCode"),
            timed_out=bool(data.get("timedOut", False)),
        )


@dataclass
class _ActiveRun:
    process: asyncio.subprocess.Process
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class ProcessRunner:
    """外部进程执行器"""

    def __init__(
        self,
        engine: PolicyEngine,
        state_dir: Union[str, Path],
        default_timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        kill_grace_sec: float = DEFAULT_KILL_GRACE_SEC,
        env: Optional[Dict[str, str]] = None,
    ):
        self.engine = engine
        self.state_dir = Path(state_dir)
        self.default_timeout_sec = default_timeout_sec
        self.kill_grace_sec = kill_grace_sec
        self.env = dict(env or {})
        self._active: Dict[str, _ActiveRun] = {}

    # ============================================
    # 路径
    # ============================================

    def _run_dir(self, task_id: str) -> Path:
        return self.state_dir / "runs" / safe_path_component(task_id, "task id")

    def get_log_path(self, task_id: str, run_id: str) -> Path:
        return self._run_dir(task_id) / f"{safe_path_component(run_id, 'run id')}.log"

    def get_metadata_path(self, task_id: str, run_id: str) -> Path:
        return self._run_dir(task_id) / f"{safe_path_component(run_id, 'run id')}.json"

    # ============================================
    # 执行
    # ============================================

    async def run(
        self,
        cmd: str,
        cwd: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        task_id: str = "adhoc",
        run_id: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CommandResult:
        """执行命令；被策略拒绝或启动失败时返回 success=False，不抛异常"""
        run_id = run_id or generate_run_id()
        timeout_sec = timeout_sec or self.default_timeout_sec

        validation = self.engine.validate_command(cmd)
        if not validation.allowed:
            logger.warning("Command rejected by policy: %s", validation.reason)
            return CommandResult(success=False, run_id=run_id, error=validation.reason)

        work_dir = self.engine.project_root
        if cwd:
            work_dir = cwd if os.path.isabs(cwd) else os.path.join(self.engine.project_root, cwd)
            if not self.engine.is_within_project(work_dir):
                logger.warning("Working directory escapes project root: %s", cwd)
                return CommandResult(
                    success=False,
                    run_id=run_id,
                    error=f'Working directory "{cwd}" escapes project root',
                )
        work_dir = os.path.realpath(work_dir)
        if not os.path.isdir(work_dir):
            return CommandResult(success=False, run_id=run_id, error=f"Working directory not found: {cwd}")

        try:
            log_path = self.get_log_path(task_id, run_id)
        except PolicyViolation as e:
            logger.warning("Refusing to run with unsafe ids: %s", e.reason)
            return CommandResult(success=False, run_id=run_id, error=e.reason)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        metadata = RunMetadata(
            run_id=run_id,
            task_id=task_id,
            command=redact_secrets(cmd),
            cwd=work_dir,
            started_at=datetime.now().isoformat(),
            log_path=str(log_path),
        )

        start = time.monotonic()
        tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        timed_out = cancelled = False
        exit_code: Optional[int] = None
        error: Optional[str] = None

        logger.info("Running [%s] %s (cwd=%s, timeout=%ss)", run_id, metadata.command, work_dir, timeout_sec)

        with open(log_path, "a", encoding="utf-8") as log:
            self._write_header(log, metadata)
            try:
                process = await self._spawn(cmd, work_dir, env)
            except OSError as e:
                error = f"Failed to start command: {e}"
                logger.error("Spawn failed for %s: %s", run_id, e)
                log.write(f"[ERROR] {error}\n")
            else:
                active = _ActiveRun(process=process)
                self._active[run_id] = active
                try:
                    readers = [
                        asyncio.create_task(self._pump(process.stdout, log, "", tail)),
                        asyncio.create_task(self._pump(process.stderr, log, STDERR_PREFIX, tail)),
                    ]
                    timed_out, cancelled = await self._supervise(active, timeout_sec, cancel_token, log)
                    await self._drain(readers)
                finally:
                    self._active.pop(run_id, None)
                    if process.returncode is None:
                        self._terminate(process, force=True)
                exit_code = process.returncode
                if timed_out:
                    error = f"Command exceeded {timeout_sec}s limit"
                elif cancelled:
                    error = "Command cancelled"

            duration_ms = int((time.monotonic() - start) * 1000)
            metadata.completed_at = datetime.now().isoformat()
            metadata.exit_code = exit_code
            metadata.timed_out = timed_out
            self._write_footer(log, metadata, duration_ms)

        self._write_metadata(metadata)

        success = error is None and exit_code == 0
        logger.info(
            "Finished [%s] exit=%s timed_out=%s cancelled=%s in %dms",
            run_id, exit_code, timed_out, cancelled, duration_ms,
        )
        return CommandResult(
            success=success,
            run_id=run_id,
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            log_path=str(log_path),
            duration_ms=duration_ms,
            output="\n".join(tail),
            error=error,
        )

    async def _spawn(self, cmd: str, cwd: str, env: Optional[Dict[str, str]]) -> asyncio.subprocess.Process:
        merged_env = {**os.environ, **self.env, **(env or {})}
        if os.name == "nt":
            return await asyncio.create_subprocess_exec(
                "cmd.exe", "/c", cmd,
                cwd=cwd,
                env=merged_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        # 新会话：信号发给整个进程组，sh 的子进程一并终止
        return await asyncio.create_subprocess_exec(
            "/bin/sh", "-c", cmd,
            cwd=cwd,
            env=merged_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=STREAM_LIMIT,
        )

    async def _pump(self, stream: asyncio.StreamReader, log: TextIO, prefix: str, tail: Deque[str]) -> None:
        """按行读取输出，脱敏后写入日志；超过 STREAM_LIMIT 的行分块读完再拼接"""
        pending: List[bytes] = []
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                raw = e.partial
                if not raw and not pending:
                    break
            except asyncio.LimitOverrunError as e:
                # consumed 不含换行符，剩余部分留给下一次 readuntil
                pending.append(await stream.readexactly(e.consumed))
                continue
            if pending:
                raw = b"".join(pending) + raw
                pending = []
            line = redact_secrets(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            log.write(f"{prefix}{line}\n")
            log.flush()
            tail.append(f"{prefix}{line}")
            if stream.at_eof():
                break

    async def _drain(self, readers: List[asyncio.Task]) -> None:
        """进程退出后等待输出读完；脱离进程组的后代可能一直占着管道"""
        done, pending = await asyncio.wait(readers, timeout=self.kill_grace_sec)
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() is not None:
                logger.warning("Output reader failed: %s", task.exception())

    async def _supervise(
        self,
        active: _ActiveRun,
        timeout_sec: float,
        cancel_token: Optional[CancellationToken],
        log: TextIO,
    ) -> Tuple[bool, bool]:
        """
        等待进程退出、超时或取消

        Returns:
            (timed_out, cancelled)
        """
        process = active.process
        exit_waiter = asyncio.create_task(process.wait())
        stop_waiters = [asyncio.create_task(active.cancel_event.wait())]
        if cancel_token is not None:
            stop_waiters.append(asyncio.create_task(cancel_token.wait()))

        try:
            await asyncio.wait(
                {exit_waiter, *stop_waiters},
                timeout=timeout_sec,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in stop_waiters:
                waiter.cancel()

        if exit_waiter.done():
            return False, False

        cancelled = active.cancel_event.is_set() or (cancel_token is not None and cancel_token.cancelled)
        timed_out = not cancelled
        if timed_out:
            log.write(f"\n[TIMEOUT] Command exceeded {timeout_sec}s limit\n")
        else:
            log.write("\n[CANCELLED] Command cancelled\n")
        log.flush()

        self._terminate(process, force=False)
        if not await self._wait_for_exit(process, exit_waiter):
            logger.warning("Process %s ignored SIGTERM for %ss, sending SIGKILL", process.pid, self.kill_grace_sec)
            log.write(f"[KILL] Process did not exit within {self.kill_grace_sec}s of SIGTERM\n")
            self._terminate(process, force=True)
            await exit_waiter

        return timed_out, cancelled

    async def _wait_for_exit(self, process: asyncio.subprocess.Process, exit_waiter: asyncio.Task) -> bool:
        """宽限期内等待进程退出；POSIX 下要求整个进程组都已退出"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.kill_grace_sec
        try:
            await asyncio.wait_for(asyncio.shield(exit_waiter), timeout=self.kill_grace_sec)
        except asyncio.TimeoutError:
            return False
        if os.name == "nt":
            return True
        while self._group_alive(process.pid):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True

    @staticmethod
    def _group_alive(pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @staticmethod
    def _terminate(process: asyncio.subprocess.Process, force: bool) -> None:
        if os.name == "nt":
            if process.returncode is None:
                if force:
                    process.kill()
                else:
                    process.terminate()
            return
        # 组长退出后组内仍可能有子进程，信号始终发给整个进程组
        try:
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Process group %s already exited", process.pid)

    # ============================================
    # 日志与元数据
    # ============================================

    @staticmethod
    def _write_header(log: TextIO, metadata: RunMetadata) -> None:
        log.write(f"{SEPARATOR}\n")
        log.write(f"Command: {metadata.command}\n")
        log.write(f"CWD: {metadata.cwd}\n")
        log.write(f"Started: {metadata.started_at}\n")
        log.write(f"{SEPARATOR}\n\n")
        log.flush()

    @staticmethod
    def _write_footer(log: TextIO, metadata: RunMetadata, duration_ms: int) -> None:
        log.write(f"\n{SEPARATOR}\n")
        log.write(f"Exit Code: {metadata.exit_code}\n")
        log.write(f"Duration: {duration_ms}ms\n")
        log.write(f"Timed Out: {'true' if metadata.timed_out else 'false'}\n")
        log.write(f"Completed: {metadata.completed_at}\n")
        log.write(f"{SEPARATOR}\n")

    def _write_metadata(self, metadata: RunMetadata) -> None:
        path = self.get_metadata_path(metadata.task_id, metadata.run_id)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(metadata.to_dict(), f, indent=2)

    def get_run_metadata(self, task_id: str, run_id: str) -> Optional[RunMetadata]:
        path = self.get_metadata_path(task_id, run_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return RunMetadata.from_dict(json.load(f))

    def get_run_log(self, task_id: str, run_id: str) -> str:
        path = self.get_log_path(task_id, run_id)
        if not path.exists():
            raise NotFoundError(f"No log for run {run_id} of task {task_id}")
        return path.read_text(encoding="utf-8", errors="replace")

    def tail_run_log(self, task_id: str, run_id: str, lines: int = 50) -> str:
        """日志最后 n 行，进程是否仍在运行都可以调用"""
        path = self.get_log_path(task_id, run_id)
        if not path.exists():
            raise NotFoundError(f"No log for run {run_id} of task {task_id}")
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            last = deque(f, maxlen=max(lines, 0))
        return "".join(last)

    def list_runs(self, task_id: str) -> List[RunMetadata]:
        """某个任务的命令执行记录，最新的在前"""
        run_dir = self._run_dir(task_id)
        if not run_dir.exists():
            return []
        runs = []
        for path in run_dir.glob("*.json"):
            with open(path, "r", encoding="utf-8") as f:
                runs.append(RunMetadata.from_dict(json.load(f)))
        return sorted(runs, key=lambda m: m.started_at, reverse=True)

    # ============================================
    # 取消
    # ============================================

    def cancel(self, run_id: str) -> bool:
        """请求取消；运行已结束时什么也不做"""
        active = self._active.get(run_id)
        if active is None:
            return False
        logger.info("Cancelling run %s", run_id)
        active.cancel_event.set()
        return True

    def cancel_all(self) -> int:
        run_ids = list(self._active)
        for run_id in run_ids:
            self.cancel(run_id)
        return len(run_ids)

    def is_running(self, run_id: str) -> bool:
        return run_id in self._active

    @property
    def active_count(self) -> int:
        return len(self._active)
