"""
Nano Dexter - 受策略约束的代码仓库 Agent

包含功能:
- 策略引擎（路径、命令、资源限额、密钥脱敏）
- 沙箱文件操作（列表/读取/原子写入/补丁/搜索）
- 命令执行器（日志、超时、SIGTERM/SIGKILL、取消）
- 步进式 Agent 循环与审计记录
"""

__version__ = "0.1.0"

from .core.errors import NanoDexterError, PolicyViolation, TaskNotRunnableError
from .core.policy import Policy, PolicyEngine, ValidationResult, create_default_policy
from .core.types import LoopState, Message, RunResult, RunStatus, Task, ToolCall
from .core.cancellation import CancellationToken
from .core.llm_client import Provider, OpenAIProvider, AnthropicProvider, MockProvider, create_provider
from .core.recorder import AgentRun, AuditRecorder, RunRecorder
from .core.task_store import TaskStore, InMemoryTaskStore
from .core.agent_loop import AgentOrchestrator, AgentConfig, EventBus
from .tools.base import ToolRegistry
from .tools.builtin import register_builtin_tools
from .tools.file_ops import SandboxedFileOps
from .tools.runner import ProcessRunner

__all__ = [
    # Errors
    "NanoDexterError", "PolicyViolation", "TaskNotRunnableError",
    # Policy
    "Policy", "PolicyEngine", "ValidationResult", "create_default_policy",
    # Core types
    "LoopState", "Message", "RunResult", "RunStatus", "Task", "ToolCall",
    "CancellationToken",
    # Providers
    "Provider", "OpenAIProvider", "AnthropicProvider", "MockProvider", "create_provider",
    # Audit
    "AgentRun", "AuditRecorder", "RunRecorder",
    "TaskStore", "InMemoryTaskStore",
    # Orchestrator
    "AgentOrchestrator", "AgentConfig", "EventBus",
    # Tools
    "ToolRegistry", "register_builtin_tools", "SandboxedFileOps", "ProcessRunner",
]
