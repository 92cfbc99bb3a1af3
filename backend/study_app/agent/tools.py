"""
Agent可调用的工具：sql_query（只读查询）与 get_dataset_schema（schema摘要）。

工具以 OpenAI function calling 的格式声明。
"""
import json
import logging
from typing import Any, Dict, List, Optional

from study_app.agent import dataset_db

logger = logging.getLogger(__name__)

SQL_QUERY_TOOL = "sql_query"
GET_DATASET_SCHEMA_TOOL = "get_dataset_schema"

SQL_QUERY_SPEC: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": SQL_QUERY_TOOL,
        "description": "Run a READ-ONLY SQL query against the dataset database. Allowed: SELECT/CTE queries only.",
        "parameters": {
            "type": "object",
            "properties": {
                "sql": {
                    "type": "string",
                    "description": "A single SELECT/CTE SQL statement (multi-line allowed).",
                },
            },
            "required": ["sql"],
        },
    },
}

GET_DATASET_SCHEMA_SPEC: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": GET_DATASET_SCHEMA_TOOL,
        "description": "Load a compact summary of available tables/columns in the dataset DB (for query planning).",
        "parameters": {"type": "object", "properties": {}},
    },
}

MAIN_TOOL_SPECS: List[Dict[str, Any]] = [SQL_QUERY_SPEC, GET_DATASET_SCHEMA_SPEC]
DQ_TOOL_SPECS: List[Dict[str, Any]] = [SQL_QUERY_SPEC]


def sql_query(sql: str) -> str:
    """执行只读查询并返回JSON字符串；校验或执行失败时抛出异常"""
    return json.dumps(dataset_db.run_read_only_query(sql), ensure_ascii=False, indent=2)


def get_dataset_schema() -> str:
    return json.dumps({"summary": dataset_db.get_schema_summary()}, ensure_ascii=False, indent=2)


def run_tool(name: str, args: Optional[Dict[str, Any]]) -> str:
    """
    执行主助手的一次工具调用，错误以文本形式返回给模型

    Args:
        name: 工具名
        args: 工具参数（参数非法时为None）

    Returns:
        str: 工具输出
    """
    try:
        if name == SQL_QUERY_TOOL:
            sql = (args or {}).get("sql")
            if not isinstance(sql, str) or not sql.strip():
                return "ERROR: sql_query requires a non-empty 'sql' string argument."
            return sql_query(sql)
        if name == GET_DATASET_SCHEMA_TOOL:
            return get_dataset_schema()
        return f"ERROR: unknown tool '{name}'."
    except Exception as exc:
        logger.warning("Tool %s failed: %s", name, exc)
        return f"ERROR executing {name}: {exc}"
