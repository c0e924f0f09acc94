"""
LLM Provider - 支持 OpenAI / Gemini（OpenAI 兼容）/ Anthropic / Mock

Provider 只负责一件事：给定对话和工具定义，返回下一轮的 AgentResponse。
传输层错误转换为 finish_reason=error，不向 Orchestrator 抛出。
"""
import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import anthropic
from openai import AsyncOpenAI, OpenAIError
from openai.types.chat.chat_completion_message_param import ChatCompletionMessageParam

from .errors import ConfigError, ProviderError
from .types import AgentResponse, FinishReason, Message, ToolCall, ToolSchema

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class Provider(ABC):
    """模型提供方接口"""

    name = "provider"

    @abstractmethod
    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
    ) -> AgentResponse:
        """根据对话返回下一轮响应"""

    def is_ready(self) -> bool:
        return True


class OpenAIProvider(Provider):
    """OpenAI Chat Completions（也用于 Gemini 的 OpenAI 兼容端点）"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        provider: str = "openai",
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
    ):
        self.name = provider
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("GEMINI_API_KEY")

        # Gemini API (OpenAI兼容模式)
        if provider == "gemini":
            base_url = base_url or GEMINI_BASE_URL

        self.base_url = base_url
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        # 没有 api_key 时 AsyncOpenAI 构造即报错，推迟到第一次请求
        if self._client is None:
            if not self.api_key:
                raise ProviderError(f"No API key configured for {self.name}")
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def is_ready(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def _convert_messages(messages: List[Message]) -> List[ChatCompletionMessageParam]:
        msgs: List[ChatCompletionMessageParam] = []
        for msg in messages:
            if msg.role == "tool":
                msgs.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                })
            elif msg.role == "assistant" and msg.tool_calls:
                msgs.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                msgs.append({"role": msg.role, "content": msg.content or ""})
        return msgs

    @staticmethod
    def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
    ) -> AgentResponse:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = [t.to_dict() for t in tools]
            kwargs["tool_choice"] = "auto"
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except (OpenAIError, ProviderError) as e:
            logger.error("%s request failed: %s", self.name, e)
            return AgentResponse(finish_reason=FinishReason.ERROR, error=str(e))

        if not response.choices:
            return AgentResponse(finish_reason=FinishReason.ERROR, error="Empty response from provider")

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=self._parse_arguments(tc.function.arguments),
            )
            for tc in (message.tool_calls or [])
        ]

        if choice.finish_reason == "length":
            finish_reason = FinishReason.LENGTH
        elif choice.finish_reason == "content_filter":
            finish_reason = FinishReason.ERROR
        elif tool_calls:
            finish_reason = FinishReason.TOOL_CALLS
        else:
            finish_reason = FinishReason.STOP

        return AgentResponse(content=message.content or "", finish_reason=finish_reason, tool_calls=tool_calls)


class AnthropicProvider(Provider):
    """Anthropic Messages API"""

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-5",
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.client = anthropic.AsyncAnthropic(api_key=self.api_key)

    def is_ready(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def _convert_messages(messages: List[Message]) -> Tuple[str, List[Dict[str, Any]]]:
        """
        转换为 Anthropic 格式

        system 消息合并为 system 参数；tool 结果作为 user 消息中的 tool_result 块，
        相邻的同角色消息合并，保证 user/assistant 交替。
        """
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        def append(role: str, blocks: List[Dict[str, Any]]) -> None:
            if not blocks:
                return
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        for msg in messages:
            if msg.role == "system":
                if msg.content:
                    system_parts.append(msg.content)
            elif msg.role == "tool":
                append("user", [{
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                }])
            elif msg.role == "assistant":
                blocks: List[Dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls or []:
                    blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
                append("assistant", blocks)
            else:
                append("user", [{"type": "text", "text": msg.content or ""}])

        return "\n\n".join(system_parts), converted

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
    ) -> AgentResponse:
        system, converted = self._convert_messages(messages)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": converted,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            logger.error("anthropic request failed: %s", e)
            return AgentResponse(finish_reason=FinishReason.ERROR, error=str(e))

        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        if response.stop_reason == "max_tokens":
            finish_reason = FinishReason.LENGTH
        elif tool_calls:
            finish_reason = FinishReason.TOOL_CALLS
        else:
            finish_reason = FinishReason.STOP

        return AgentResponse(content="".join(text_parts), finish_reason=finish_reason, tool_calls=tool_calls)


class MockProvider(Provider):
    """
    离线 Provider，用于测试和 --mock 运行

    优先消费脚本队列；队列为空时按触发短语匹配最近一条 user/tool 消息；
    都不匹配时走默认流程：先 list_files，收到工具结果后 task_complete（结果含 error 时 task_failed）。
    """

    name = "mock"

    def __init__(self, responses: Optional[List[AgentResponse]] = None):
        self._queue: List[AgentResponse] = list(responses or [])
        self._scenarios: List[Tuple[str, AgentResponse]] = []
        self.call_history: List[Dict[str, Any]] = []
        self._setup_default_scenarios()

    def add_scenario(self, trigger: str, response: AgentResponse) -> None:
        """后添加的场景优先"""
        self._scenarios.insert(0, (trigger.lower(), response))

    def queue(self, *responses: AgentResponse) -> None:
        self._queue.extend(responses)

    def clear_history(self) -> None:
        self.call_history.clear()

    @property
    def call_count(self) -> int:
        return len(self.call_history)

    def _setup_default_scenarios(self) -> None:
        self.add_scenario("read the file", AgentResponse(
            content="I will read the file to understand its contents.",
            finish_reason=FinishReason.TOOL_CALLS,
            tool_calls=[ToolCall(id="call_read", name="read_file", arguments={"path": "README.md"})],
        ))
        self.add_scenario("search for", AgentResponse(
            content="I will search the codebase for the requested pattern.",
            finish_reason=FinishReason.TOOL_CALLS,
            tool_calls=[ToolCall(id="call_search", name="search", arguments={"query": "TODO", "maxResults": 10})],
        ))
        self.add_scenario("run tests", AgentResponse(
            content="I will run the tests to verify the implementation.",
            finish_reason=FinishReason.TOOL_CALLS,
            tool_calls=[ToolCall(id="call_test", name="run_command", arguments={"cmd": "pytest", "timeoutSec": 120})],
        ))
        self.add_scenario("unclear requirement", AgentResponse(
            content="I need clarification on the requirements before proceeding.",
            finish_reason=FinishReason.TOOL_CALLS,
            tool_calls=[ToolCall(id="call_blocked", name="task_blocked", arguments={
                "reason": "The requirements are unclear",
                "question": "Could you please clarify what specific behavior is expected?",
            })],
        ))
        self.add_scenario("all criteria met", AgentResponse(
            content="All acceptance criteria have been verified and met.",
            finish_reason=FinishReason.TOOL_CALLS,
            tool_calls=[ToolCall(id="call_done", name="task_complete", arguments={
                "summary": "Successfully completed the task",
                "acceptanceResults": [
                    {"criterion": "Implementation works correctly", "passed": True, "evidence": "Tests pass"},
                ],
            })],
        ))

    async def complete(
        self,
        messages: List[Message],
        tools: Optional[List[ToolSchema]] = None,
    ) -> AgentResponse:
        self.call_history.append({"messages": list(messages), "tools": list(tools or [])})

        if self._queue:
            return copy.deepcopy(self._queue.pop(0))

        latest = next((m for m in reversed(messages) if m.role in ("user", "tool")), None)
        content = (latest.content or "") if latest else ""
        lowered = content.lower()

        # 工具结果之后不再匹配触发短语，避免同一任务描述反复触发
        if latest is not None and latest.role == "user":
            for trigger, response in self._scenarios:
                if trigger in lowered:
                    return copy.deepcopy(response)

        return self._default_response(latest)

    @staticmethod
    def _default_response(latest: Optional[Message]) -> AgentResponse:
        if latest is not None and latest.role == "tool":
            lowered = (latest.content or "").lower()
            if "error" in lowered or "failed" in lowered:
                return AgentResponse(
                    content="The operation encountered an error. I will mark the task as failed.",
                    finish_reason=FinishReason.TOOL_CALLS,
                    tool_calls=[ToolCall(name="task_failed", arguments={
                        "reason": "Tool execution failed",
                        "nextSteps": "Review the error and try again",
                    })],
                )
            return AgentResponse(
                content="The operation completed successfully. I will verify the acceptance criteria.",
                finish_reason=FinishReason.TOOL_CALLS,
                tool_calls=[ToolCall(name="task_complete", arguments={
                    "summary": "Task completed successfully based on tool execution",
                    "acceptanceResults": [
                        {"criterion": "Task requirements met", "passed": True, "evidence": "Tool execution successful"},
                    ],
                })],
            )

        return AgentResponse(
            content="Let me first explore the project structure to understand the codebase.",
            finish_reason=FinishReason.TOOL_CALLS,
            tool_calls=[ToolCall(name="list_files", arguments={"glob": "src/**/*", "maxResults": 20})],
        )


def create_provider(config: Dict[str, Any], use_mock: bool = False) -> Provider:
    """根据配置创建 Provider"""
    llm_config = config.get("llm", {})
    provider_name = "mock" if use_mock else llm_config.get("provider", "openai")
    temperature = config.get("agent", {}).get("temperature", 0.2)

    if provider_name == "mock":
        return MockProvider()

    provider_config = llm_config.get(provider_name, {})
    if provider_name in ("openai", "gemini"):
        return OpenAIProvider(
            api_key=llm_config.get("api_key"),
            base_url=provider_config.get("base_url"),
            model=provider_config.get("model", "gpt-4o-mini"),
            provider=provider_name,
            temperature=temperature,
        )
    if provider_name == "anthropic":
        return AnthropicProvider(
            api_key=llm_config.get("api_key"),
            model=provider_config.get("model", "claude-sonnet-4-5"),
            temperature=temperature,
            max_tokens=provider_config.get("max_tokens", 4096),
        )

    raise ConfigError(f"Unknown LLM provider: {provider_name}")
