from sqlalchemy import Column, String, DateTime, JSON
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base


class AgentThread(Base):
    """Agent线程登记表

    只记录线程ID、创建时间和元数据；消息历史保存在 LangGraph 检查点中。
    """
    __tablename__ = "agent_threads"

    thread_id = Column(String, primary_key=True)
    thread_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)
