"""
数据质量影子检查（TIMELINESS）。

在主助手给出最终回答后运行，不向用户可见的消息历史追加任何内容。
每个用户回合无论结果如何（评估成功、NOT_EVALUATED、UNKNOWN）都恰好写入一行
ThreadDataQualityLog。
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from study_app.agent.configuration import AgentConfiguration, ensure_configuration
from study_app.agent.dataset_db import get_schema_summary
from study_app.agent.messages import AssistantMessage, ToolMessage, UserMessage
from study_app.agent.prompts import DQ_SYSTEM_PROMPT_TEMPLATE
from study_app.agent.table_extraction import union_used_tables
from study_app.agent.tools import DQ_TOOL_SPECS, SQL_QUERY_TOOL, sql_query
from study_app.core.timeutil import isoformat, utcnow
from study_app.crud import dq_log
from study_app.database import SessionLocal
from study_app.services.llm_gateway import llm_gateway

logger = logging.getLogger(__name__)

NOT_EVALUATED_TEXT = "Timeliness was not assessed because no data query (sql_query) was performed."
INVALID_TOOL_CALLS_TEXT = "DQ tool calls were invalid (must be exactly one sql_query per step)."
EXCEEDED_TEXT = "DQ exceeded the maximum allowed sql_query retries."
MALFORMED_TEXT = "DQ tool call was malformed."
INVALID_JSON_TEXT = "DQ output was not valid JSON."

USER_MESSAGE_SEPARATOR = "\n\n--- USER MESSAGE ---\n\n"


def timeliness(status: str, text: str) -> Dict[str, Any]:
    return {"TIMELINESS": {"status": status, "text": text}}


def collect_sql_calls(messages: Sequence) -> List[str]:
    """按顺序收集主助手发出的全部 sql_query 调用"""
    sqls: List[str] = []
    for message in messages:
        if isinstance(message, AssistantMessage):
            for call in message.tool_calls:
                sql = (call.args or {}).get("sql")
                if call.name == SQL_QUERY_TOOL and sql:
                    sqls.append(str(sql))
    return sqls


def last_assistant_answer(messages: Sequence) -> str:
    for message in reversed(messages):
        if isinstance(message, AssistantMessage) and message.content.strip():
            return message.content.strip()
    return ""


def chat_history(messages: Sequence) -> List[Dict[str, str]]:
    history = []
    for message in messages:
        if isinstance(message, (UserMessage, AssistantMessage)) and message.content.strip():
            role = "user" if isinstance(message, UserMessage) else "assistant"
            history.append({"role": role, "content": message.content.strip()})
    return history


def chat_transcript(messages: Sequence) -> str:
    """完整的用户/助手对话文本，使用明确的分隔标记"""
    lines = ["BEGIN CHAT HISTORY"]
    for entry in chat_history(messages):
        label = "USER" if entry["role"] == "user" else "ASSISTANT"
        lines.extend(["", "---", f"[{label}]", entry["content"]])
    lines.extend(["", "END CHAT HISTORY"])
    return "\n".join(lines).strip()


def user_messages_joined(messages: Sequence) -> str:
    parts = [m.content.strip() for m in messages if isinstance(m, UserMessage) and m.content.strip()]
    return USER_MESSAGE_SEPARATOR.join(parts).strip()


class DataQualityPass:
    """
    对一个用户回合执行TIMELINESS检查并写入审计记录

    Args:
        gateway: LLM网关，缺省使用全局单例
        session_factory: 写审计记录使用的Session工厂
        run_sql: 执行DQ的SQL，返回工具输出字符串；失败时抛出异常
    """

    def __init__(self, gateway=None, session_factory=None, run_sql=None):
        self.gateway = gateway or llm_gateway
        self.session_factory = session_factory or SessionLocal
        self.run_sql = run_sql or sql_query

    def _persist(
            self,
            thread_id: str,
            indicators: Dict[str, Any],
            used_tables: List[str],
            main_sql: Optional[str],
            dq_sql: Optional[str],
    ) -> None:
        db = self.session_factory()
        try:
            dq_log.append(
                db,
                lang_graph_thread_id=thread_id,
                indicators=indicators,
                used_tables=used_tables,
                main_sql=main_sql,
                dq_sql=dq_sql,
            )
        except Exception:
            logger.exception("Persisting data quality log failed for thread=%s", thread_id)
            db.rollback()
        finally:
            db.close()

    async def _evaluate(
            self,
            configuration: AgentConfiguration,
            dq_input: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        scratch: List = [UserMessage(content=json.dumps(dq_input, ensure_ascii=False, indent=2))]
        max_calls = configuration.dq_max_sql_calls

        dq_sql: Optional[str] = None
        sql_call_count = 0
        final_text: Optional[str] = None

        for _ in range(max_calls + 2):
            reply = await self.gateway.get_completion(
                DQ_SYSTEM_PROMPT_TEMPLATE,
                scratch,
                tools=DQ_TOOL_SPECS,
                model=configuration.model,
            )

            if not reply.tool_calls:
                final_text = reply.content.strip()
                break

            sql_calls = [call for call in reply.tool_calls if call.name == SQL_QUERY_TOOL]
            if len(sql_calls) != 1 or len(reply.tool_calls) != 1:
                return timeliness("UNKNOWN", INVALID_TOOL_CALLS_TEXT), dq_sql

            if sql_call_count >= max_calls:
                return timeliness("UNKNOWN", EXCEEDED_TEXT), dq_sql

            call = sql_calls[0]
            sql = (call.args or {}).get("sql")
            if not isinstance(sql, str) or not sql.strip():
                return timeliness("UNKNOWN", MALFORMED_TEXT), dq_sql

            dq_sql = sql
            sql_call_count += 1

            # SQL错误作为工具输出反馈给模型，允许在剩余次数内自行修正
            try:
                tool_output = await asyncio.to_thread(self.run_sql, sql)
            except Exception as exc:
                tool_output = f"ERROR executing sql_query: {exc}"

            scratch.append(reply)
            scratch.append(ToolMessage(content=str(tool_output), tool_call_id=call.id, name=SQL_QUERY_TOOL))

        if final_text is None:
            return timeliness("UNKNOWN", EXCEEDED_TEXT), dq_sql

        try:
            indicators = json.loads(final_text)
        except ValueError:
            return timeliness("UNKNOWN", INVALID_JSON_TEXT), dq_sql
        if not isinstance(indicators, dict):
            return timeliness("UNKNOWN", INVALID_JSON_TEXT), dq_sql
        return indicators, dq_sql

    async def run(
            self,
            messages: Sequence,
            turn_start: int = 0,
            configuration: Optional[AgentConfiguration] = None,
    ) -> Dict[str, Any]:
        """
        执行检查并写入恰好一行审计记录

        Args:
            messages: 线程的完整消息（含本回合）
            turn_start: 本回合第一条消息的下标
            configuration: 运行配置（thread_id 必填）

        Returns:
            Dict[str, Any]: 写入的指标
        """
        configuration = configuration or ensure_configuration()
        thread_id = configuration.thread_id or ""
        turn_messages = list(messages[turn_start:])

        sqls = collect_sql_calls(turn_messages)
        main_sql = sqls[-1] if sqls else None
        used_tables = union_used_tables(sqls)

        if not sqls:
            indicators = timeliness("NOT_EVALUATED", NOT_EVALUATED_TEXT)
            await asyncio.to_thread(self._persist, thread_id, indicators, [], None, None)
            return indicators

        dq_sql: Optional[str] = None
        try:
            schema_summary = await asyncio.to_thread(get_schema_summary)
            transcript = chat_transcript(messages)
            last_user = next((m.content for m in reversed(messages) if isinstance(m, UserMessage)), "")
            dq_input = {
                "user_question": transcript or last_user,
                "main_assistant_answer": last_assistant_answer(turn_messages),
                "all_sql_used": sqls,
                "main_sql_used": main_sql,
                "used_tables": used_tables,
                "dataset_schema_summary": schema_summary,
                "user_messages_only": user_messages_joined(messages),
                "chat_history": chat_history(messages),
                "system_time": isoformat(utcnow()),
            }
            indicators, dq_sql = await self._evaluate(configuration, dq_input)
        except Exception as exc:
            logger.exception("Data quality pass failed for thread=%s", thread_id)
            indicators = timeliness("UNKNOWN", f"DQ pass failed: {exc}")

        await asyncio.to_thread(self._persist, thread_id, indicators, used_tables, main_sql, dq_sql)
        return indicators
