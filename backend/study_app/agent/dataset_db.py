"""
数据集数据库访问（只读分析查询）。

连接池、schema摘要缓存都是进程级、惰性初始化的单例；初始化由锁保护，
并发的首次调用只会触发一次初始化。
"""
import logging
import threading
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine

from study_app.agent.sql_guard import assert_read_only_sql
from study_app.core.config import settings

logger = logging.getLogger(__name__)

_SYSTEM_SCHEMAS = {"information_schema", "pg_catalog", "pg_toast"}

_engine: Optional[Engine] = None
_engine_lock = threading.Lock()

_schema_summary: Optional[str] = None
_schema_lock = threading.Lock()


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_size=settings.DATASET_POOL_SIZE,
        max_overflow=0,
        pool_pre_ping=True,
    )


def get_dataset_engine() -> Engine:
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = _build_engine(settings.DATASET_DATABASE_URL)
    return _engine


def set_dataset_engine(engine: Optional[Engine]) -> None:
    """替换数据集引擎（测试或脚本使用），同时清空schema摘要缓存"""
    global _engine, _schema_summary
    with _engine_lock:
        _engine = engine
    with _schema_lock:
        _schema_summary = None


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def run_read_only_query(
        sql: str,
        max_rows: Optional[int] = None,
        timeout_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """
    执行一条只读查询

    Args:
        sql: 模型给出的SQL（会先经过只读校验）
        max_rows: 返回行数上限
        timeout_ms: 单条语句超时（PostgreSQL）

    Returns:
        Dict[str, Any]: {ok, rowCount, rows, meta: {truncated, maxRows, timeoutMs}}

    Raises:
        UnsafeSqlError: 未通过只读校验
        sqlalchemy.exc.SQLAlchemyError: 执行失败
    """
    max_rows = settings.DATASET_SQL_MAX_ROWS if max_rows is None else max_rows
    timeout_ms = settings.DATASET_SQL_STATEMENT_TIMEOUT_MS if timeout_ms is None else timeout_ms
    safe_sql = assert_read_only_sql(sql)

    engine = get_dataset_engine()
    with engine.connect() as conn:
        trans = conn.begin()
        try:
            if conn.dialect.name == "postgresql":
                conn.exec_driver_sql("SET TRANSACTION READ ONLY")
                conn.exec_driver_sql(f"SET LOCAL statement_timeout = {int(timeout_ms)}")
            result = conn.execution_options(no_parameters=True).exec_driver_sql(safe_sql)
            fetched = result.mappings().fetchmany(max_rows + 1)
        finally:
            trans.rollback()

    truncated = len(fetched) > max_rows
    rows = [{key: _json_safe(value) for key, value in row.items()} for row in fetched[:max_rows]]
    return {
        "ok": True,
        "rowCount": len(rows),
        "rows": rows,
        "meta": {
            "truncated": truncated,
            "maxRows": max_rows,
            "timeoutMs": timeout_ms,
        },
    }


def _introspect_schema(engine: Engine, max_tables: int, max_columns: int) -> str:
    inspector = inspect(engine)
    if engine.dialect.name == "sqlite":
        schemas = ["main"]
    else:
        schemas = [name for name in inspector.get_schema_names() if name not in _SYSTEM_SCHEMAS]

    lines: List[str] = []
    for schema in sorted(schemas):
        for table in sorted(inspector.get_table_names(schema=schema)):
            columns = [f"{column['name']}:{column['type']}" for column in inspector.get_columns(table, schema=schema)]
            column_text = ", ".join(columns[:max_columns])
            if len(columns) > max_columns:
                column_text += ", …"
            lines.append(f"- {schema}.{table} ({column_text})")

    summary = "Dataset DB schema (introspected):\n" + "\n".join(lines[:max_tables])
    if len(lines) > max_tables:
        summary += "\n… (truncated)"
    return summary


def get_schema_summary() -> str:
    """返回缓存的schema摘要；首次调用时内省数据集数据库"""
    global _schema_summary
    if _schema_summary is not None:
        return _schema_summary
    with _schema_lock:
        if _schema_summary is None:
            _schema_summary = _introspect_schema(
                get_dataset_engine(),
                settings.SCHEMA_SUMMARY_MAX_TABLES,
                settings.SCHEMA_SUMMARY_MAX_COLUMNS,
            )
            logger.info("Dataset schema summary cached (%d chars)", len(_schema_summary))
    return _schema_summary
