"""
工具基类 - ToolBuilder / ToolInvocation / ToolRegistry

模型发来的参数先经过每个工具自己的 pydantic 参数模型校验，
再构建出类型化的 ToolInvocation；注册表是唯一的分发入口。
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from ..core.cancellation import CancellationToken
from ..core.errors import FileOpError, PolicyViolation
from ..core.recorder import AuditRecorder
from ..core.types import ToolCall, ToolExecutionResult, ToolKind, ToolSchema
from .file_ops import SandboxedFileOps
from .runner import ProcessRunner

logger = logging.getLogger(__name__)


class ToolArgs(BaseModel):
    """工具参数基类：接受 camelCase 或 snake_case"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


@dataclass
class ToolContext:
    """工具执行上下文，由 Orchestrator 在每次 Run 开始时构建"""
    file_ops: SandboxedFileOps
    runner: ProcessRunner
    task_id: str
    run_id: Optional[str] = None
    recorder: Optional[AuditRecorder] = None
    cancel_token: Optional[CancellationToken] = None
    command_timeout_sec: float = 120


class ToolInvocation(ABC):
    """一次已校验参数的工具调用"""

    def __init__(self, tool: "ToolBuilder", call_id: str, args: ToolArgs):
        self.tool = tool
        self.name = tool.name
        self.kind = tool.kind
        self.call_id = call_id
        self.args = args

    async def execute(self, context: ToolContext) -> ToolExecutionResult:
        """执行；工具级错误转换为回填给模型的字符串"""
        try:
            return await self.run(context)
        except PolicyViolation as e:
            return ToolExecutionResult(output=f"Error: {e.reason}")
        except FileOpError as e:
            return ToolExecutionResult(output=f"Error: {e}")
        except OSError as e:
            logger.warning("%s failed with OS error: %s", self.name, e)
            return ToolExecutionResult(output=f"Error: {e.strerror or e}")
        except ValueError as e:
            # 含 UnicodeError：例如内容里有孤立的代理字符
            logger.warning("%s rejected invalid input: %s", self.name, e)
            return ToolExecutionResult(output=f"Error: {e}")

    @abstractmethod
    async def run(self, context: ToolContext) -> ToolExecutionResult:
        pass


class ToolBuilder(ABC):
    """工具构建器基类"""

    args_model: Type[ToolArgs] = ToolArgs
    invocation_class: Type[ToolInvocation]

    def __init__(
        self,
        name: str,
        display_name: Optional[str] = None,
        description: str = "",
        kind: ToolKind = ToolKind.READ,
        parameter_schema: Optional[Dict] = None,
    ):
        self.name = name
        self.display_name = display_name or name
        self.description = description
        self.kind = kind
        self.parameter_schema = parameter_schema or {"type": "object", "properties": {}}

    def build(self, call_id: str, params: Dict[str, Any]) -> ToolInvocation:
        """校验参数并构建调用实例；参数无效时抛出 ValidationError"""
        args = self.args_model.model_validate(params)
        return self.invocation_class(self, call_id, args)

    def to_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameter_schema)


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolRegistry:
    """工具注册表"""

    def __init__(self):
        self._tools: Dict[str, ToolBuilder] = {}

    def register(self, tool: ToolBuilder) -> None:
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[ToolBuilder]:
        return self._tools.get(name)

    def get_all(self) -> List[ToolBuilder]:
        return list(self._tools.values())

    def get_all_schemas(self) -> List[ToolSchema]:
        return [tool.to_schema() for tool in self._tools.values()]

    async def dispatch(self, call: ToolCall, context: ToolContext) -> ToolExecutionResult:
        """按名称分发；未知工具和无效参数都作为工具结果返回"""
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning("Model requested unknown tool %s", call.name)
            return ToolExecutionResult(output=f"Unknown tool: {call.name}")

        try:
            invocation = tool.build(call.id, call.arguments)
        except ValidationError as e:
            return ToolExecutionResult(output=f"Invalid arguments for {call.name}: {format_validation_error(e)}")

        logger.debug("Executing %s (%s)", call.name, call.id)
        return await invocation.execute(context)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
