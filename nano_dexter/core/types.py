"""
核心类型定义 - Agent运行时的数据模型
"""
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
import random
import string
import time
import uuid


class LoopState(Enum):
    """Orchestrator 状态机"""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Run 记录状态"""
    RUNNING = "running"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FinishReason(str, Enum):
    """模型本轮停止输出的原因"""
    STOP = "stop"
    ERROR = "error"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"


class StopReason(str, Enum):
    """终止型工具的结果"""
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"


class ToolKind(str, Enum):
    """工具类型枚举"""
    READ = "read"
    EDIT = "edit"
    SEARCH = "search"
    EXECUTE = "execute"
    CONTROL = "control"


@dataclass
class ToolCall:
    """模型发起的工具调用，参数未经校验"""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class Message:
    """对话消息"""
    role: str  # "system", "user", "assistant", "tool"
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role}
        if self.content:
            data["content"] = self.content
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.name:
            data["name"] = self.name
        return data


@dataclass
class AgentResponse:
    """Provider 返回的一轮结果"""
    content: str = ""
    finish_reason: FinishReason = FinishReason.STOP
    tool_calls: List[ToolCall] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ToolSchema:
    """工具JSON Schema定义"""
    name: str
    description: str
    parameters: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters
            }
        }


@dataclass
class StopData:
    """终止型工具携带的数据"""
    summary: Optional[str] = None
    acceptance_results: List[Any] = field(default_factory=list)
    reason: Optional[str] = None
    question: Optional[str] = None
    next_steps: Optional[str] = None


@dataclass
class ToolExecutionResult:
    """工具执行结果，output 会原样回填给模型"""
    output: str
    should_stop: bool = False
    stop_reason: Optional[StopReason] = None
    stop_data: Optional[StopData] = None

    def __post_init__(self):
        if self.should_stop and self.stop_reason is None:
            raise ValueError("should_stop=True requires a stop_reason")


@dataclass
class Comment:
    """任务评论（审计条目）"""
    kind: str  # "agent", "failure", "system", "instruction"
    author: str
    content: str
    run_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class Task:
    """外部任务存储中的任务"""
    id: str
    title: str
    description: str = ""
    acceptance_criteria: List[str] = field(default_factory=list)
    human_only: bool = False
    status: str = "todo"
    comments: List[Comment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", data["id"])),
            description=str(data.get("description", "")),
            acceptance_criteria=[str(c) for c in data.get("acceptanceCriteria", data.get("acceptance_criteria", []))],
            human_only=bool(data.get("humanOnly", data.get("human_only", False))),
            status=str(data.get("status", "todo")),
        )


@dataclass
class RunResult:
    """一次 execute 的终态结果，产生后不再修改"""
    success: bool
    run: Any  # core.recorder.AgentRun
    task: Task
    error: Optional[str] = None

    @property
    def status(self) -> RunStatus:
        return RunStatus(self.run.status)


@dataclass
class AgentEvent:
    """Agent事件"""
    type: str
    data: Any
    timestamp: datetime = field(default_factory=datetime.now)


# 事件处理器类型
EventHandler = Callable[[AgentEvent], Coroutine[Any, Any, None]]


class EventType:
    """事件类型常量"""
    STATE_CHANGE = "state_change"
    STEP = "step"
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    COMPLETION = "completion"
    ERROR = "error"


_BASE36 = string.digits + string.ascii_lowercase


def generate_run_id() -> str:
    """run-<毫秒时间戳>-<9位base36随机串>"""
    suffix = "".join(random.choice(_BASE36) for _ in range(9))
    return f"run-{int(time.time() * 1000)}-{suffix}"
