# backend/study_app/services/survey_service.py
"""
问卷实例与答案存储。

问卷实例按 (participant, phase) 惰性、并发安全地创建；提交时校验全部答案，
答案行、实例提交时间和参与者阶段推进在同一个事务中写入。
"""
import logging
import math
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from study_app.core.errors import AlreadySubmitted, ServerMisconfigured, ValidationFailed
from study_app.core.timeutil import utcnow
from study_app.crud import survey_answer as crud_survey_answer
from study_app.crud import survey_instance as crud_survey_instance
from study_app.crud import survey_template as crud_survey_template
from study_app.models.enums import QuestionType, SurveyPhase
from study_app.models.participant import Participant
from study_app.models.survey import SurveyAnswerOption, SurveyInstance, SurveyQuestion
from study_app.schemas.survey import (
    MultiChoiceAnswer,
    ScaleAnswer,
    SingleChoiceAnswer,
    SurveyOptionView,
    SurveyQuestionView,
    SurveyView,
    TextAnswer,
)

logger = logging.getLogger(__name__)

PHASE_TEMPLATE_KEYS: Dict[SurveyPhase, str] = {
    SurveyPhase.PRE: "pre",
    SurveyPhase.TASK1_POST: "task1_post",
    SurveyPhase.TASK2_POST: "task2_post",
    SurveyPhase.TASK3_POST: "task3_post",
    SurveyPhase.FINAL: "final",
}

# 浮点步长比较的容差
_STEP_EPSILON = 1e-9


def task_post_phase(task_number: int) -> SurveyPhase:
    return SurveyPhase(f"TASK{task_number}_POST")


def _is_on_step(value: float, minimum: float, step: float) -> bool:
    if step <= 0:
        return True
    ratio = (value - minimum) / step
    return math.isclose(ratio, round(ratio), abs_tol=_STEP_EPSILON)


class SurveyService:

    @staticmethod
    def ensure_instance(db: Session, participant: Participant, phase: SurveyPhase) -> SurveyInstance:
        """
        确保参与者在该阶段有且只有一个问卷实例

        Args:
            db: 数据库会话
            participant: 参与者
            phase: 问卷阶段

        Returns:
            SurveyInstance: 问卷实例
        """
        existing = crud_survey_instance.get_by_participant_phase(db, participant_id=participant.id, phase=phase.value)
        if existing is not None:
            return existing

        template_key = PHASE_TEMPLATE_KEYS[phase]
        template = crud_survey_template.get_by_key(db, study_id=participant.study_id, key=template_key)
        if template is None:
            raise ServerMisconfigured(f"Survey template '{template_key}' is not configured.")

        return crud_survey_instance.ensure(
            db, participant_id=participant.id, phase=phase.value, template_id=template.id
        )

    @staticmethod
    def build_view(instance: SurveyInstance) -> SurveyView:
        template = instance.template
        questions = [
            SurveyQuestionView(
                id=question.id,
                key=question.key,
                text=question.text,
                type=question.type,
                required=question.required,
                order=question.order,
                scale_min=question.scale_min,
                scale_max=question.scale_max,
                scale_step=question.scale_step,
                options=[
                    SurveyOptionView(id=option.id, label=option.label, value=option.value, order=option.order)
                    for option in question.options
                ],
            )
            for question in sorted(template.questions, key=lambda q: (q.order, q.id))
        ]
        return SurveyView(
            instance_id=instance.id,
            phase=instance.phase,
            template_key=template.key,
            title=template.title,
            submitted=instance.submitted_at is not None,
            questions=questions,
        )

    @staticmethod
    def _validate_answer(question: SurveyQuestion, answer) -> None:
        key = question.key
        if answer.type != question.type:
            raise ValidationFailed(f"Answer type mismatch for question {key}")

        option_ids = {option.id for option in question.options}

        if question.type == QuestionType.SCALE_NRS.value:
            value = float(answer.value)
            if question.scale_min is not None and value < question.scale_min:
                raise ValidationFailed(f"Value too small: {key}")
            if question.scale_max is not None and value > question.scale_max:
                raise ValidationFailed(f"Value too large: {key}")
            minimum = question.scale_min if question.scale_min is not None else 0.0
            if question.scale_step and not _is_on_step(value, minimum, question.scale_step):
                raise ValidationFailed(f"Invalid step for {key}")
        elif question.type == QuestionType.SINGLE_CHOICE.value:
            if answer.option_id not in option_ids:
                raise ValidationFailed(f"Invalid option for {key}")
        elif question.type == QuestionType.MULTI_CHOICE.value:
            if question.required and not answer.option_ids:
                raise ValidationFailed(f"Select at least one option: {key}")
            for option_id in answer.option_ids:
                if option_id not in option_ids:
                    raise ValidationFailed(f"Invalid option for {key}")
        elif question.type == QuestionType.TEXT.value:
            if question.required and not answer.text.strip():
                raise ValidationFailed(f"Text is required: {key}")

    def validate(self, instance: SurveyInstance, answers: List) -> Dict[int, object]:
        """
        校验全部答案，返回 question_id -> answer

        Raises:
            ValidationFailed: 第一个违反的约束
        """
        questions = sorted(instance.template.questions, key=lambda q: (q.order, q.id))
        question_ids = {question.id for question in questions}

        by_question: Dict[int, object] = {}
        for answer in answers:
            if answer.question_id not in question_ids:
                raise ValidationFailed(f"Unknown question id {answer.question_id}")
            if answer.question_id in by_question:
                raise ValidationFailed(f"Duplicate answer for question id {answer.question_id}")
            by_question[answer.question_id] = answer

        for question in questions:
            answer = by_question.get(question.id)
            if answer is None:
                if question.required:
                    raise ValidationFailed(f"Missing required answer: {question.key}")
                continue
            self._validate_answer(question, answer)

        return by_question

    @staticmethod
    def _write_answer(db: Session, instance: SurveyInstance, answer) -> None:
        values = {"instance_id": instance.id, "question_id": answer.question_id}
        if isinstance(answer, ScaleAnswer):
            values["numeric_value"] = float(answer.value)
        elif isinstance(answer, SingleChoiceAnswer):
            values["option_id"] = answer.option_id
        elif isinstance(answer, TextAnswer):
            values["text_value"] = answer.text.strip()

        row = crud_survey_answer.create(db, obj_in=values)

        if isinstance(answer, MultiChoiceAnswer):
            for option_id in sorted(set(answer.option_ids)):
                db.add(SurveyAnswerOption(answer_id=row.id, option_id=option_id))
            db.flush()

    def submit(
            self,
            db: Session,
            participant: Participant,
            phase: SurveyPhase,
            answers: List,
            advance: Callable[[Participant], None],
            on_submitted: Optional[Callable[[Participant], None]] = None,
    ) -> SurveyInstance:
        """
        提交问卷（全部成功或全部不写入）

        Args:
            db: 数据库会话
            participant: 参与者
            phase: 问卷阶段
            answers: 已解析的答案列表
            advance: 推进参与者阶段的函数，在同一事务中执行
            on_submitted: 同一事务中额外执行的写入（例如任务会话时间戳）

        Returns:
            SurveyInstance: 已提交的实例
        """
        instance = self.ensure_instance(db, participant, phase)
        if instance.submitted_at is not None:
            raise AlreadySubmitted()

        by_question = self.validate(instance, answers)

        try:
            now = utcnow()
            # 先做条件更新占住实例，并发的重复提交在写答案之前就会失败
            changed = (
                db.query(SurveyInstance)
                .filter(SurveyInstance.id == instance.id, SurveyInstance.submitted_at.is_(None))
                .update({SurveyInstance.submitted_at: now}, synchronize_session=False)
            )
            if not changed:
                raise AlreadySubmitted()

            try:
                for answer in by_question.values():
                    self._write_answer(db, instance, answer)
            except IntegrityError:
                raise AlreadySubmitted()

            if on_submitted is not None:
                on_submitted(participant)
            advance(participant)
            participant.last_active_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(instance)
        logger.info("Survey %s submitted by participant=%s", phase.value, participant.id)
        return instance


survey_service = SurveyService()
