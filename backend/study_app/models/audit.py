from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base


class ThreadDataQualityLog(Base):
    """数据质量审计日志模型

    只追加，不更新。每个完成的用户回合写入恰好一行。

    Attributes:
        lang_graph_thread_id: Agent线程ID
        indicators: 结构化指标，例如 {"TIMELINESS": {"status": ..., "text": ...}}
        used_tables: 本回合所有SQL涉及的表（并集，排序）
        main_sql: 主助手最后执行的SQL
        dq_sql: 数据质量检查最后执行的SQL
    """
    __tablename__ = "thread_data_quality_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lang_graph_thread_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    indicators = Column(JSON, nullable=False)
    used_tables = Column(JSON, nullable=False, default=list)
    main_sql = Column(Text, nullable=True)
    dq_sql = Column(Text, nullable=True)
