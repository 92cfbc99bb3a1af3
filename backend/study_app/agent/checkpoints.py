"""Agent线程的检查点存储与线程登记"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver
from sqlalchemy.exc import IntegrityError

from study_app.core.config import settings
from study_app.models.agent_thread import AgentThread

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_checkpointer(path: Optional[str] = None) -> AsyncIterator[BaseCheckpointSaver]:
    """
    打开对话图使用的检查点存储

    Args:
        path: SQLite文件路径，缺省取 AGENT_CHECKPOINT_SQLITE_PATH；为空时使用 MemorySaver
    """
    path = path or settings.AGENT_CHECKPOINT_SQLITE_PATH
    if not path:
        logger.info("Agent checkpoints are kept in memory")
        yield MemorySaver()
        return

    async with AsyncSqliteSaver.from_conn_string(path) as saver:
        logger.info("Agent checkpoints are stored in %s", path)
        yield saver


def create_thread(session_factory, thread_id: Optional[str] = None,
                  metadata: Optional[Dict[str, Any]] = None) -> AgentThread:
    """
    登记一个线程；thread_id 已存在时直接返回已有记录

    在工作线程中调用，自己打开并关闭数据库会话。

    Args:
        session_factory: Session工厂
        thread_id: 线程ID，缺省时生成UUID
        metadata: 线程元数据

    Returns:
        AgentThread: 线程记录（已脱离会话）
    """
    thread_id = thread_id or str(uuid.uuid4())
    db = session_factory()
    try:
        existing = db.get(AgentThread, thread_id)
        if existing is not None:
            db.expunge(existing)
            return existing

        thread = AgentThread(thread_id=thread_id, thread_metadata=metadata or {})
        db.add(thread)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Thread %s created concurrently, re-reading", thread_id)
            thread = db.get(AgentThread, thread_id)
        else:
            db.refresh(thread)
        db.expunge(thread)
        return thread
    finally:
        db.close()


def get_thread(session_factory, thread_id: str) -> Optional[AgentThread]:
    db = session_factory()
    try:
        thread = db.get(AgentThread, thread_id)
        if thread is not None:
            db.expunge(thread)
        return thread
    finally:
        db.close()
