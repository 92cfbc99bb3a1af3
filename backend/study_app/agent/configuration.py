from typing import Any, Dict, Optional

from pydantic import BaseModel

from study_app.agent.prompts import SYSTEM_PROMPT_TEMPLATE
from study_app.core.config import settings


class AgentConfiguration(BaseModel):
    """一次Agent运行的配置

    Attributes:
        thread_id: Agent线程ID（审计记录按它关联）
        model: 使用的模型名称
        system_prompt_template: 主助手提示词模板
        max_tool_rounds: 主助手工具调用轮数上限
        dq_max_sql_calls: 数据质量检查的SQL调用上限
    """
    thread_id: Optional[str] = None
    model: str
    system_prompt_template: str
    max_tool_rounds: int
    dq_max_sql_calls: int


def ensure_configuration(config: Optional[Dict[str, Any]] = None, thread_id: Optional[str] = None) -> AgentConfiguration:
    """从运行请求的 config.configurable 中读取配置，缺省值取自全局设置"""
    configurable = (config or {}).get("configurable") or {}
    return AgentConfiguration(
        thread_id=thread_id or configurable.get("thread_id"),
        model=configurable.get("model") or settings.STUDY_OPENAI_MODEL,
        system_prompt_template=(
            configurable.get("systemPromptTemplate")
            or settings.AGENT_SYSTEM_PROMPT_TEMPLATE
            or SYSTEM_PROMPT_TEMPLATE
        ),
        max_tool_rounds=int(configurable.get("maxToolRounds") or settings.AGENT_MAX_TOOL_ROUNDS),
        dq_max_sql_calls=int(configurable.get("dqMaxSqlCalls") or settings.DQ_MAX_SQL_CALLS),
    )
