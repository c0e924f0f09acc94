"""Tool system module - 沙箱文件操作、命令执行与工具分发"""

from .base import (
    ToolArgs,
    ToolBuilder,
    ToolContext,
    ToolInvocation,
    ToolRegistry,
)
from .builtin import register_builtin_tools
from .file_ops import SandboxedFileOps
from .runner import CommandResult, ProcessRunner

__all__ = [
    'ToolArgs',
    'ToolBuilder',
    'ToolContext',
    'ToolInvocation',
    'ToolRegistry',
    'register_builtin_tools',
    'SandboxedFileOps',
    'CommandResult',
    'ProcessRunner',
]
