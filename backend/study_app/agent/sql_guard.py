"""
只读SQL校验。

先清理模型输出中常见的包装（代码块围栏、结尾的 --- 分隔线），
再做单语句、SELECT/WITH 开头以及关键字黑名单检查。
"""
import re

DENIED_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "ALTER",
    "TRUNCATE",
    "CREATE",
    "GRANT",
    "REVOKE",
    "VACUUM",
)

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")
_SEPARATOR_RE = re.compile(r"\n---\s*")


class UnsafeSqlError(ValueError):
    """SQL未通过只读校验"""


def sanitize_sql(raw: str) -> str:
    sql = (raw or "").strip()

    if sql.startswith("```"):
        sql = _FENCE_OPEN_RE.sub("", sql)
        sql = _FENCE_CLOSE_RE.sub("", sql)
        sql = sql.strip()

    match = _SEPARATOR_RE.search(sql)
    if match:
        sql = sql[:match.start()].strip()

    return sql


def assert_read_only_sql(raw: str) -> str:
    """
    校验并返回清理后的SQL

    Args:
        raw: 模型给出的SQL

    Returns:
        str: 清理后的单条只读语句

    Raises:
        UnsafeSqlError: 非 SELECT/WITH、多语句或包含写操作关键字
    """
    sql = sanitize_sql(raw)

    # 允许结尾分号，其余分号视为多语句
    sql = sql.rstrip().rstrip(";").rstrip()
    if ";" in sql:
        raise UnsafeSqlError("Only a single SQL statement is allowed.")

    head = sql[:16].upper()
    if not (head.startswith("SELECT") or head.startswith("WITH")):
        raise UnsafeSqlError("Only SELECT / WITH queries are allowed.")

    upper = sql.upper()
    if any(keyword in upper for keyword in DENIED_KEYWORDS):
        raise UnsafeSqlError("Write/DDL operations are not allowed.")

    return sql
