from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text, ForeignKey, JSON,
    UniqueConstraint, Index, text,
)
from sqlalchemy.orm import relationship
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base
from study_app.models.enums import ThreadStatus


class TaskSession(Base):
    """任务会话模型

    每个 (participant, task_number) 一行，首次加载任务时惰性创建。

    Attributes:
        chat_started_at / chat_ended_at: 聊天开始与结束时间
        ready_to_answer_at: 参与者点击"准备回答"的时间
        post_survey_started_at / post_survey_submitted_at: 任务后问卷时间戳
        user_message_count / assistant_message_count: 消息计数
        chat_restart_count: 派生值，始终为 max(0, 线程数 - 1)
        side_panel_open_count / side_panel_close_count / side_panel_open_ms: 侧边栏使用统计
    """
    __tablename__ = "task_sessions"
    __table_args__ = (UniqueConstraint("participant_id", "task_number", name="uq_task_session_participant_task"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    participant_id = Column(String, ForeignKey("participants.id"), nullable=False, index=True)
    task_number = Column(Integer, nullable=False)

    chat_started_at = Column(DateTime, nullable=True)
    chat_ended_at = Column(DateTime, nullable=True)
    ready_to_answer_at = Column(DateTime, nullable=True)
    post_survey_started_at = Column(DateTime, nullable=True)
    post_survey_submitted_at = Column(DateTime, nullable=True)

    has_chatted_at_least_once = Column(Boolean, nullable=False, default=False)
    user_message_count = Column(Integer, nullable=False, default=0)
    assistant_message_count = Column(Integer, nullable=False, default=0)
    chat_restart_count = Column(Integer, nullable=False, default=0)

    side_panel_open_count = Column(Integer, nullable=False, default=0)
    side_panel_close_count = Column(Integer, nullable=False, default=0)
    side_panel_open_ms = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    participant = relationship("Participant", back_populates="task_sessions")
    threads = relationship("ChatThread", back_populates="task_session")


class ChatThread(Base):
    """聊天线程模型

    本地镜像一个Agent线程ID，归属于唯一的任务会话。

    Attributes:
        lang_graph_thread_id: Agent运行时的线程ID（全局唯一）
        status: ACTIVE | CLOSED
        close_reason: RESTARTED | TASK_FINISHED | ABANDONED | ERROR
        restart_index: 该线程在其任务会话中的序号（从0开始）
    """
    __tablename__ = "chat_threads"
    __table_args__ = (
        Index(
            "uq_chat_thread_active",
            "task_session_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_session_id = Column(Integer, ForeignKey("task_sessions.id"), nullable=False, index=True)
    lang_graph_thread_id = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, default=ThreadStatus.ACTIVE.value)
    close_reason = Column(String, nullable=True)
    restart_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    task_session = relationship("TaskSession", back_populates="threads")


class ChatMessage(Base):
    """聊天消息模型

    Attributes:
        chat_thread_id: 关联到chat_threads.id
        role: USER | ASSISTANT | TOOL | SYSTEM
        content: 可见文本
        sequence: 线程内从1开始递增的序号
        agent_message_id: Agent消息ID，用于全局去重
        meta: 原始内容、工具名称与工具调用ID
    """
    __tablename__ = "chat_messages"
    __table_args__ = (UniqueConstraint("chat_thread_id", "sequence", name="uq_chat_message_thread_sequence"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_thread_id = Column(Integer, ForeignKey("chat_threads.id"), nullable=False, index=True)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    sequence = Column(Integer, nullable=False)
    agent_message_id = Column(String, unique=True, nullable=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class SidePanelSpan(Base):
    """侧边栏使用区间模型

    每个任务会话同一时刻最多只有一行 closed_at 为空（部分唯一索引保证）。

    Attributes:
        task_session_id: 关联到task_sessions.id
        chat_thread_id: 打开时的线程（尽力关联）
        opened_at / closed_at: 区间起止
        opened_after_message_seq / closed_after_message_seq: 打开/关闭时线程中最后一条消息的序号
    """
    __tablename__ = "side_panel_spans"
    __table_args__ = (
        Index(
            "uq_side_panel_span_open",
            "task_session_id",
            unique=True,
            sqlite_where=text("closed_at IS NULL"),
            postgresql_where=text("closed_at IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_session_id = Column(Integer, ForeignKey("task_sessions.id"), nullable=False, index=True)
    chat_thread_id = Column(Integer, ForeignKey("chat_threads.id"), nullable=True)
    opened_at = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    opened_after_message_seq = Column(Integer, nullable=True)
    closed_after_message_seq = Column(Integer, nullable=True)
