from sqlalchemy import (
    Column, Integer, Float, String, DateTime, Boolean, Text, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from study_app.core.timeutil import utcnow
from study_app.db.base_class import Base


class SurveyTemplate(Base):
    """问卷模板模型

    模板键：pre, task1_post, task2_post, task3_post, final
    """
    __tablename__ = "survey_templates"
    __table_args__ = (UniqueConstraint("study_id", "key", name="uq_survey_template_study_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    study_id = Column(Integer, ForeignKey("studies.id"), nullable=False, index=True)
    key = Column(String, nullable=False)
    title = Column(String, nullable=False, default="")

    questions = relationship("SurveyQuestion", back_populates="template", order_by="SurveyQuestion.order")


class SurveyQuestion(Base):
    """问卷题目模型

    Attributes:
        key: 题目键（模板内唯一）
        type: SCALE_NRS | SINGLE_CHOICE | MULTI_CHOICE | TEXT
        required: 是否必答
        order: 展示顺序
        scale_min / scale_max / scale_step: 仅 SCALE_NRS 使用
    """
    __tablename__ = "survey_questions"
    __table_args__ = (UniqueConstraint("template_id", "key", name="uq_survey_question_template_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(Integer, ForeignKey("survey_templates.id"), nullable=False, index=True)
    key = Column(String, nullable=False)
    text = Column(Text, nullable=False)
    type = Column(String, nullable=False)
    required = Column(Boolean, nullable=False, default=True)
    order = Column(Integer, nullable=False, default=0)
    scale_min = Column(Float, nullable=True)
    scale_max = Column(Float, nullable=True)
    scale_step = Column(Float, nullable=True)

    template = relationship("SurveyTemplate", back_populates="questions")
    options = relationship("SurveyOption", back_populates="question", order_by="SurveyOption.order")


class SurveyOption(Base):
    __tablename__ = "survey_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question_id = Column(Integer, ForeignKey("survey_questions.id"), nullable=False, index=True)
    label = Column(String, nullable=False)
    value = Column(String, nullable=False)
    order = Column(Integer, nullable=False, default=0)

    question = relationship("SurveyQuestion", back_populates="options")


class SurveyInstance(Base):
    """问卷实例模型

    每个 (participant, phase) 恰好一行；submitted_at 设置后不可再修改。
    """
    __tablename__ = "survey_instances"
    __table_args__ = (UniqueConstraint("participant_id", "phase", name="uq_survey_instance_participant_phase"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    participant_id = Column(String, ForeignKey("participants.id"), nullable=False, index=True)
    template_id = Column(Integer, ForeignKey("survey_templates.id"), nullable=False)
    phase = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    submitted_at = Column(DateTime, nullable=True)

    template = relationship("SurveyTemplate")


class SurveyAnswer(Base):
    """问卷答案模型

    按题目类型使用不同的值列；多选题的选项通过 SurveyAnswerOption 关联行保存。
    """
    __tablename__ = "survey_answers"
    __table_args__ = (UniqueConstraint("instance_id", "question_id", name="uq_survey_answer_instance_question"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_id = Column(Integer, ForeignKey("survey_instances.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("survey_questions.id"), nullable=False)
    numeric_value = Column(Float, nullable=True)
    text_value = Column(Text, nullable=True)
    option_id = Column(Integer, ForeignKey("survey_options.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    selected_options = relationship("SurveyAnswerOption", back_populates="answer")


class SurveyAnswerOption(Base):
    __tablename__ = "survey_answer_options"
    __table_args__ = (UniqueConstraint("answer_id", "option_id", name="uq_survey_answer_option"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    answer_id = Column(Integer, ForeignKey("survey_answers.id"), nullable=False, index=True)
    option_id = Column(Integer, ForeignKey("survey_options.id"), nullable=False)

    answer = relationship("SurveyAnswer", back_populates="selected_options")
