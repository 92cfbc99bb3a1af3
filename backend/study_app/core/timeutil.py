from datetime import datetime, UTC
from typing import Optional


def utcnow() -> datetime:
    """当前UTC时间（无时区信息），与数据库中存储的DateTime列保持一致"""
    return datetime.now(UTC).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"
