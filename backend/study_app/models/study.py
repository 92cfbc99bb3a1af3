from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base


class Study(Base):
    """研究模型

    一次研究包含固定的三个任务定义和五份问卷模板。

    Attributes:
        id: 研究ID
        key: 研究的唯一标识
        name: 研究名称
        created_at: 记录创建时间
    """
    __tablename__ = "studies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task_definitions = relationship("TaskDefinition", back_populates="study", order_by="TaskDefinition.task_number")


class TaskDefinition(Base):
    """任务定义模型

    Attributes:
        id: 任务定义ID
        study_id: 关联到studies.id
        task_number: 任务编号 1..3
        title: 任务标题
        prompt_markdown: 展示给参与者的任务说明（Markdown）
    """
    __tablename__ = "task_definitions"
    __table_args__ = (UniqueConstraint("study_id", "task_number", name="uq_task_definition_study_task"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    study_id = Column(Integer, ForeignKey("studies.id"), nullable=False, index=True)
    task_number = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    prompt_markdown = Column(Text, nullable=False, default="")

    study = relationship("Study", back_populates="task_definitions")
