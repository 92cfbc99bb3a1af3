"""
主助手的对话图（LangGraph StateGraph）：

    START → call_model ─┬─ tools → call_model
                        └─ dq_pass → END

工具调用轮数受 max_tool_rounds 限制；达到上限后再调用一次模型且不提供工具，
保证每个回合都以一条助手回答结束。线程消息由图的检查点保存。
"""
import asyncio
import logging
import operator
from typing import Annotated, Any, Dict, List, Optional, Sequence, TypedDict

from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, START, StateGraph

from study_app.agent.configuration import AgentConfiguration
from study_app.agent.dataset_db import get_schema_summary
from study_app.agent.dq_pass import DataQualityPass
from study_app.agent.messages import AssistantMessage, ToolMessage, normalize_messages
from study_app.agent.tools import MAIN_TOOL_SPECS, run_tool
from study_app.core.timeutil import isoformat, utcnow
from study_app.services.llm_gateway import llm_gateway

logger = logging.getLogger(__name__)


class AgentState(TypedDict, total=False):
    # 消息以JSON字典保存，检查点序列化不依赖具体的消息类
    messages: Annotated[List[Dict[str, Any]], operator.add]
    turn_start: int
    tool_rounds: int
    dq_indicators: Dict[str, Any]


def build_system_prompt(template: str, schema_summary: str) -> str:
    # 模板中可能包含JSON花括号，不能使用 str.format
    return (
        template
        .replace("{system_time}", isoformat(utcnow()))
        .replace("{dataset_schema}", schema_summary)
    )


def _dump(messages: Sequence) -> List[Dict[str, Any]]:
    return [message.model_dump(mode="json") for message in messages]


def _configuration_of(config: RunnableConfig) -> AgentConfiguration:
    configurable = config.get("configurable") or {}
    return AgentConfiguration(**configurable["agent_configuration"])


class AgentGraph:
    """
    主助手回合执行器

    Args:
        gateway: LLM网关，缺省使用全局单例
        dq_pass: 数据质量检查，缺省按同一网关创建
        checkpointer: LangGraph检查点存储，缺省为进程内的 MemorySaver
    """

    def __init__(
            self,
            gateway=None,
            dq_pass: Optional[DataQualityPass] = None,
            checkpointer: Optional[BaseCheckpointSaver] = None,
    ):
        self.gateway = gateway or llm_gateway
        self.dq_pass = dq_pass or DataQualityPass(gateway=self.gateway)
        self.graph = self._build_graph().compile(checkpointer=checkpointer or MemorySaver())

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(AgentState)
        graph.add_node("call_model", self._call_model_node)
        graph.add_node("tools", self._tools_node)
        graph.add_node("dq_pass", self._dq_pass_node)

        graph.add_edge(START, "call_model")
        graph.add_conditional_edges(
            "call_model",
            self._route_after_model,
            {"tools": "tools", "dq_pass": "dq_pass"},
        )
        graph.add_edge("tools", "call_model")
        graph.add_edge("dq_pass", END)
        return graph

    async def call_model(
            self,
            messages: Sequence,
            configuration: AgentConfiguration,
            tools_enabled: bool = True,
    ) -> AssistantMessage:
        schema_summary = await asyncio.to_thread(get_schema_summary)
        system_prompt = build_system_prompt(configuration.system_prompt_template, schema_summary)
        return await self.gateway.get_completion(
            system_prompt,
            list(messages),
            tools=MAIN_TOOL_SPECS if tools_enabled else None,
            model=configuration.model,
        )

    async def _call_model_node(self, state: AgentState, config: RunnableConfig) -> Dict[str, Any]:
        configuration = _configuration_of(config)
        tools_enabled = state.get("tool_rounds", 0) < configuration.max_tool_rounds
        reply = await self.call_model(normalize_messages(state["messages"]), configuration, tools_enabled)

        if reply.tool_calls and not tools_enabled:
            logger.warning(
                "Model requested tools after the round limit for thread=%s; dropping tool calls",
                configuration.thread_id,
            )
            reply = reply.model_copy(update={"tool_calls": []})
        return {"messages": _dump([reply])}

    @staticmethod
    def _route_after_model(state: AgentState) -> str:
        last = state["messages"][-1]
        return "tools" if last.get("tool_calls") else "dq_pass"

    @staticmethod
    async def _tools_node(state: AgentState) -> Dict[str, Any]:
        """依次执行最后一条助手消息中的全部工具调用"""
        reply = normalize_messages(state["messages"][-1:])[0]
        results: List[ToolMessage] = []
        for call in reply.tool_calls:
            output = await asyncio.to_thread(run_tool, call.name, call.args)
            results.append(ToolMessage(content=output, tool_call_id=call.id, name=call.name))
        return {"messages": _dump(results), "tool_rounds": state.get("tool_rounds", 0) + 1}

    async def _dq_pass_node(self, state: AgentState, config: RunnableConfig) -> Dict[str, Any]:
        indicators = await self.dq_pass.run(
            normalize_messages(state["messages"]),
            turn_start=state.get("turn_start", 0),
            configuration=_configuration_of(config),
        )
        return {"dq_indicators": indicators or {}}

    @staticmethod
    def run_config(configuration: AgentConfiguration) -> RunnableConfig:
        # 每轮工具调用占两个超步，外加最后一次模型调用与数据质量检查
        return {
            "configurable": {
                "thread_id": configuration.thread_id,
                "agent_configuration": configuration.model_dump(),
            },
            "recursion_limit": 2 * configuration.max_tool_rounds + 5,
        }

    async def get_messages(self, thread_id: str) -> List:
        """读取线程检查点中的规范化消息；没有检查点时返回空列表"""
        snapshot = await self.graph.aget_state({"configurable": {"thread_id": thread_id}})
        return normalize_messages((snapshot.values or {}).get("messages", []))

    async def run_turn(self, configuration: AgentConfiguration, new_messages: Sequence) -> List:
        """
        执行一个用户回合

        Args:
            configuration: 运行配置（thread_id 必填）
            new_messages: 本回合新输入的消息

        Returns:
            List: 线程的完整消息（历史 + 本回合）
        """
        config = self.run_config(configuration)
        history = await self.get_messages(configuration.thread_id)
        result = await self.graph.ainvoke(
            {"messages": _dump(new_messages), "turn_start": len(history), "tool_rounds": 0},
            config,
        )
        return normalize_messages(result["messages"])
