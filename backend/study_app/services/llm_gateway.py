# backend/study_app/services/llm_gateway.py
import asyncio
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from study_app.agent.messages import AgentMessage, AssistantMessage, normalize_message, to_openai_message
from study_app.core.config import settings

logger = logging.getLogger(__name__)


class LLMGateway:
    """LLM网关服务"""

    def __init__(self):
        self.api_key = settings.STUDY_OPENAI_API_KEY
        self.api_base = settings.STUDY_OPENAI_API_BASE
        self.model = settings.STUDY_OPENAI_MODEL

        self.max_tokens = settings.LLM_MAX_TOKENS
        self.temperature = settings.LLM_TEMPERATURE

        # 初始化OpenAI客户端（兼容OpenAI协议的服务均可）
        self.client = OpenAI(
            api_key=self.api_key,
            base_url=self.api_base
        )

    async def get_completion(
        self,
        system_prompt: str,
        messages: List[AgentMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ) -> AssistantMessage:
        """
        获取LLM完成结果（支持工具调用）

        Args:
            system_prompt: 系统提示词
            messages: 规范化后的消息列表
            tools: OpenAI function calling 格式的工具声明，None 表示不允许调用工具
            model: 模型名称
            max_tokens: 最大token数
            temperature: 温度参数

        Returns:
            AssistantMessage: 模型回复（可能包含工具调用）
        """
        full_messages = [{"role": "system", "content": system_prompt}] + [to_openai_message(m) for m in messages]

        kwargs: Dict[str, Any] = {
            "model": model or self.model,
            "messages": full_messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if tools:
            kwargs["tools"] = tools

        # OpenAI客户端是同步的，使用 asyncio.to_thread 来在异步环境中运行
        try:
            response = await asyncio.to_thread(self.client.chat.completions.create, **kwargs)
        except Exception as e:
            logger.error("Error calling LLM API: %s", e)
            raise

        if not response.choices:
            return AssistantMessage(content="")

        message = response.choices[0].message
        return normalize_message({
            "type": "ai",
            "content": message.content or "",
            "tool_calls": [
                {
                    "id": call.id,
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in (message.tool_calls or [])
            ],
        })


# 创建单例实例
llm_gateway = LLMGateway()
