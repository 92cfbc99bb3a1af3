"""
从SQL中粗略提取 schema.table 形式的表名。

仅作为审计元数据使用，不参与任何安全判断。
"""
import re
from typing import Iterable, List

_TABLE_RE = re.compile(
    r'\b(?:FROM|JOIN)\s+((?:"[^"]+"|[A-Za-z0-9_]+)\.(?:"[^"]+"|[A-Za-z0-9_]+))',
    re.IGNORECASE,
)


def extract_used_tables(sql: str) -> List[str]:
    tables = {match.group(1).replace('"', "") for match in _TABLE_RE.finditer(sql or "")}
    return sorted(tables)


def union_used_tables(sqls: Iterable[str]) -> List[str]:
    tables = set()
    for sql in sqls:
        tables.update(extract_used_tables(sql))
    return sorted(tables)
