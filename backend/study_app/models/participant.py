from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship
from study_app.core.routing import Step
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base
from study_app.models.enums import ParticipantStatus


class Participant(Base):
    """参与者模型

    存储每个研究参与者的身份与进度。currentStep 只能通过状态机迁移修改。

    Attributes:
        id: 系统生成的唯一ID (UUID)
        study_id: 关联到studies.id
        access_code: 唯一访问码
        status: CREATED | STARTED | COMPLETED | WITHDRAWN | INVALIDATED
        current_step: 当前步骤（十个固定步骤之一）
        current_task_number: 当前任务编号 1..3，非任务步骤时为空
        assigned_variant: 分配的实验变体
        side_panel_enabled: 是否展示数据质量侧边栏（每个参与者固定）
        started_at / completed_at / last_active_at: 时间戳
        reentry_count: 输入访问码的次数
    """
    __tablename__ = "participants"

    id = Column(String, primary_key=True)
    study_id = Column(Integer, ForeignKey("studies.id"), nullable=True, index=True)
    access_code = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, default=ParticipantStatus.CREATED.value)
    current_step = Column(String, nullable=False, default=Step.WELCOME.value)
    current_task_number = Column(Integer, nullable=True)
    assigned_variant = Column(String, nullable=True)
    side_panel_enabled = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_active_at = Column(DateTime, nullable=True)
    reentry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task_sessions = relationship("TaskSession", back_populates="participant")


class ParticipantAccessLog(Base):
    """访问日志模型

    每次输入访问码开始会话时追加一行。

    Attributes:
        id: 日志ID
        participant_id: 关联到participants.id
        entered_at: 进入时间
        user_agent: 浏览器UA
        client_meta: 客户端附带的元数据
    """
    __tablename__ = "participant_access_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    participant_id = Column(String, ForeignKey("participants.id"), nullable=False, index=True)
    entered_at = Column(DateTime, default=utcnow, nullable=False)
    user_agent = Column(String, nullable=True)
    client_meta = Column(JSON, nullable=True)
