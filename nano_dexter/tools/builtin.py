"""
内置工具实现 - 模型可调用的全部词汇

list_files / read_file / search / write_file / apply_patch / run_command
以及三个终止型工具 task_complete / task_blocked / task_failed。
"""
import logging
from typing import List, Optional

from pydantic import Field

from ..core.recorder import AcceptanceResult
from ..core.types import StopData, StopReason, ToolExecutionResult, ToolKind
from .base import ToolArgs, ToolBuilder, ToolContext, ToolInvocation, ToolRegistry

logger = logging.getLogger(__name__)

COMMAND_OUTPUT_TAIL = 30


# ============================================
# list_files
# ============================================

class ListFilesArgs(ToolArgs):
    glob: str
    max_results: int = Field(100, ge=1, le=1000)


class ListFilesInvocation(ToolInvocation):
    """列出文件"""

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        files = context.file_ops.list_files(self.args.glob, self.args.max_results)
        listing = "\n".join(files) if files else "none"
        return ToolExecutionResult(output=f"Found {len(files)} files:\n{listing}")


class ListFilesTool(ToolBuilder):
    args_model = ListFilesArgs
    invocation_class = ListFilesInvocation

    def __init__(self):
        super().__init__(
            name="list_files",
            display_name="List Files",
            description="List files matching a glob pattern in the project",
            kind=ToolKind.READ,
            parameter_schema={
                "type": "object",
                "properties": {
                    "glob": {
                        "type": "string",
                        "description": 'Glob pattern to match files (e.g., "src/**/*.py")'
                    },
                    "maxResults": {
                        "type": "integer",
                        "description": "Maximum number of results to return",
                        "default": 100
                    }
                },
                "required": ["glob"]
            }
        )


# ============================================
# read_file
# ============================================

class ReadFileArgs(ToolArgs):
    path: str


class ReadFileInvocation(ToolInvocation):
    """读取文件工具调用"""

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        content = context.file_ops.read_file(self.args.path)
        return ToolExecutionResult(output=f"File contents:\n{content}")


class ReadFileTool(ToolBuilder):
    """读取文件工具"""

    args_model = ReadFileArgs
    invocation_class = ReadFileInvocation

    def __init__(self):
        super().__init__(
            name="read_file",
            display_name="Read File",
            description="Read the contents of a file",
            kind=ToolKind.READ,
            parameter_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file to read (relative to project root)"
                    }
                },
                "required": ["path"]
            }
        )


# ============================================
# search
# ============================================

class SearchArgs(ToolArgs):
    query: str
    glob: Optional[str] = None
    max_results: int = Field(50, ge=1, le=1000)
    case_sensitive: bool = False


class SearchInvocation(ToolInvocation):

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        matches = context.file_ops.search(
            self.args.query,
            glob=self.args.glob,
            max_results=self.args.max_results,
            case_sensitive=self.args.case_sensitive,
        )
        listing = "\n".join(f"{m.path}:{m.line}: {m.content}" for m in matches) if matches else "none"
        return ToolExecutionResult(output=f"Found {len(matches)} matches:\n{listing}")


class SearchTool(ToolBuilder):
    args_model = SearchArgs
    invocation_class = SearchInvocation

    def __init__(self):
        super().__init__(
            name="search",
            display_name="Search",
            description="Search for content in files using regex",
            kind=ToolKind.SEARCH,
            parameter_schema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Regex pattern to search for"
                    },
                    "glob": {
                        "type": "string",
                        "description": "Optional glob pattern to filter files"
                    },
                    "maxResults": {
                        "type": "integer",
                        "description": "Maximum number of results",
                        "default": 50
                    },
                    "caseSensitive": {
                        "type": "boolean",
                        "description": "Match case exactly",
                        "default": False
                    }
                },
                "required": ["query"]
            }
        )


# ============================================
# write_file / apply_patch
# ============================================

class WriteFileArgs(ToolArgs):
    path: str
    content: str


class WriteFileInvocation(ToolInvocation):
    """写入文件工具调用"""

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        stats = context.file_ops.write_file(self.args.path, self.args.content)
        if context.recorder is not None:
            context.recorder.record_patch(
                path=self.args.path,
                diff_summary=f"File written (+{stats.lines_added} -{stats.lines_removed})",
                lines_added=stats.lines_added,
                lines_removed=stats.lines_removed,
            )
        return ToolExecutionResult(
            output=f"Successfully wrote file: {self.args.path} (+{stats.lines_added} -{stats.lines_removed})"
        )


class WriteFileTool(ToolBuilder):
    """写入文件工具"""

    args_model = WriteFileArgs
    invocation_class = WriteFileInvocation

    def __init__(self):
        super().__init__(
            name="write_file",
            display_name="Write File",
            description="Write content to a file (creates backup of the previous version)",
            kind=ToolKind.EDIT,
            parameter_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file to write"
                    },
                    "content": {
                        "type": "string",
                        "description": "Full content to write"
                    }
                },
                "required": ["path", "content"]
            }
        )


class ApplyPatchArgs(ToolArgs):
    path: str
    unified_diff: str


class ApplyPatchInvocation(ToolInvocation):

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        stats = context.file_ops.apply_patch(self.args.path, self.args.unified_diff)
        if context.recorder is not None:
            context.recorder.record_patch(
                path=self.args.path,
                diff_summary=self.args.unified_diff,
                lines_added=stats.lines_added,
                lines_removed=stats.lines_removed,
            )
        return ToolExecutionResult(output=f"Patch applied: +{stats.lines_added} -{stats.lines_removed}")


class ApplyPatchTool(ToolBuilder):
    args_model = ApplyPatchArgs
    invocation_class = ApplyPatchInvocation

    def __init__(self):
        super().__init__(
            name="apply_patch",
            display_name="Apply Patch",
            description="Apply a unified diff patch to a file",
            kind=ToolKind.EDIT,
            parameter_schema={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file to patch"
                    },
                    "unifiedDiff": {
                        "type": "string",
                        "description": "The unified diff to apply"
                    }
                },
                "required": ["path", "unifiedDiff"]
            }
        )


# ============================================
# run_command
# ============================================

class RunCommandArgs(ToolArgs):
    cmd: str
    cwd: Optional[str] = None
    timeout_sec: Optional[float] = Field(None, gt=0, le=3600)


class RunCommandInvocation(ToolInvocation):
    """Shell命令执行"""

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        result = await context.runner.run(
            self.args.cmd,
            cwd=self.args.cwd,
            timeout_sec=self.args.timeout_sec or context.command_timeout_sec,
            task_id=context.task_id,
            cancel_token=context.cancel_token,
        )

        if context.recorder is not None:
            context.recorder.record_command(
                command=self.args.cmd,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                output_path=result.log_path,
                timed_out=result.timed_out,
            )

        if result.log_path is None:
            # 未启动进程：策略拒绝、cwd 越界或启动失败
            return ToolExecutionResult(output=f"Error: {result.error}")

        tail = "\n".join(result.output.splitlines()[-COMMAND_OUTPUT_TAIL:])
        if result.success:
            return ToolExecutionResult(output=f"Command succeeded (exit code {result.exit_code}):\n{tail}")

        header = f"Command failed (exit code {result.exit_code}, timedOut: {str(result.timed_out).lower()})"
        if result.error:
            header += f" - {result.error}"
        return ToolExecutionResult(output=f"{header}:\n{tail}")


class RunCommandTool(ToolBuilder):
    """Shell命令执行工具"""

    args_model = RunCommandArgs
    invocation_class = RunCommandInvocation

    def __init__(self):
        super().__init__(
            name="run_command",
            display_name="Run Command",
            description="Run an allow-listed shell command in the project (no pipes, redirection or chaining)",
            kind=ToolKind.EXECUTE,
            parameter_schema={
                "type": "object",
                "properties": {
                    "cmd": {
                        "type": "string",
                        "description": "Command to run"
                    },
                    "cwd": {
                        "type": "string",
                        "description": "Working directory relative to project root"
                    },
                    "timeoutSec": {
                        "type": "number",
                        "description": "Timeout in seconds",
                        "default": 120
                    }
                },
                "required": ["cmd"]
            }
        )


# ============================================
# 终止型工具
# ============================================

class TaskCompleteArgs(ToolArgs):
    summary: str
    acceptance_results: List[AcceptanceResult] = Field(default_factory=list)


class TaskCompleteInvocation(ToolInvocation):
    """
    完成任务

    只有提供了验收结果且每一条都 passed 才算完成；空列表视为未验证。
    """

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        results = list(self.args.acceptance_results)
        stop_data = StopData(summary=self.args.summary, acceptance_results=results)

        if not results:
            stop_data.reason = "No acceptance results supplied"
            return ToolExecutionResult(
                output="Task completion rejected: no acceptance results supplied",
                should_stop=True,
                stop_reason=StopReason.FAILED,
                stop_data=stop_data,
            )

        if not all(r.passed for r in results):
            stop_data.reason = "Not all acceptance criteria passed"
            return ToolExecutionResult(
                output="Task completion rejected: not all criteria passed",
                should_stop=True,
                stop_reason=StopReason.FAILED,
                stop_data=stop_data,
            )

        return ToolExecutionResult(
            output="Task completion accepted",
            should_stop=True,
            stop_reason=StopReason.COMPLETE,
            stop_data=stop_data,
        )


class TaskCompleteTool(ToolBuilder):
    args_model = TaskCompleteArgs
    invocation_class = TaskCompleteInvocation

    def __init__(self):
        super().__init__(
            name="task_complete",
            display_name="Task Complete",
            description="Mark the task as complete. Every acceptance criterion must be listed with evidence.",
            kind=ToolKind.CONTROL,
            parameter_schema={
                "type": "object",
                "properties": {
                    "summary": {
                        "type": "string",
                        "description": "Summary of what was done"
                    },
                    "acceptanceResults": {
                        "type": "array",
                        "description": "Result for each acceptance criterion",
                        "items": {
                            "type": "object",
                            "properties": {
                                "criterion": {"type": "string"},
                                "passed": {"type": "boolean"},
                                "evidence": {"type": "string"}
                            },
                            "required": ["criterion", "passed"]
                        }
                    }
                },
                "required": ["summary", "acceptanceResults"]
            }
        )


class TaskBlockedArgs(ToolArgs):
    reason: str
    question: str


class TaskBlockedInvocation(ToolInvocation):

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        return ToolExecutionResult(
            output="Task marked as blocked",
            should_stop=True,
            stop_reason=StopReason.BLOCKED,
            stop_data=StopData(reason=self.args.reason, question=self.args.question),
        )


class TaskBlockedTool(ToolBuilder):
    args_model = TaskBlockedArgs
    invocation_class = TaskBlockedInvocation

    def __init__(self):
        super().__init__(
            name="task_blocked",
            display_name="Task Blocked",
            description="Stop because a human decision or clarification is needed",
            kind=ToolKind.CONTROL,
            parameter_schema={
                "type": "object",
                "properties": {
                    "reason": {
                        "type": "string",
                        "description": "Why the task cannot proceed"
                    },
                    "question": {
                        "type": "string",
                        "description": "Question for the human"
                    }
                },
                "required": ["reason", "question"]
            }
        )


class TaskFailedArgs(ToolArgs):
    reason: str
    next_steps: Optional[str] = None


class TaskFailedInvocation(ToolInvocation):

    async def run(self, context: ToolContext) -> ToolExecutionResult:
        return ToolExecutionResult(
            output="Task marked as failed",
            should_stop=True,
            stop_reason=StopReason.FAILED,
            stop_data=StopData(reason=self.args.reason, next_steps=self.args.next_steps),
        )


class TaskFailedTool(ToolBuilder):
    args_model = TaskFailedArgs
    invocation_class = TaskFailedInvocation

    def __init__(self):
        super().__init__(
            name="task_failed",
            display_name="Task Failed",
            description="Stop because the task cannot be completed",
            kind=ToolKind.CONTROL,
            parameter_schema={
                "type": "object",
                "properties": {
                    "reason": {
                        "type": "string",
                        "description": "Why the task failed"
                    },
                    "nextSteps": {
                        "type": "string",
                        "description": "Suggested next steps"
                    }
                },
                "required": ["reason"]
            }
        )


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    """注册所有内置工具"""
    registry.register(ListFilesTool())
    registry.register(ReadFileTool())
    registry.register(SearchTool())
    registry.register(WriteFileTool())
    registry.register(ApplyPatchTool())
    registry.register(RunCommandTool())
    registry.register(TaskCompleteTool())
    registry.register(TaskBlockedTool())
    registry.register(TaskFailedTool())
    return registry
