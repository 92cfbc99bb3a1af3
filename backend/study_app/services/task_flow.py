# backend/study_app/services/task_flow.py
"""
研究流程编排：任务加载、准备回答、各阶段问卷的加载与提交。

每个操作先通过状态机校验当前步骤，再调用台账和问卷存储。
"""
import logging
from typing import List

from sqlalchemy.orm import Session

from study_app.core.errors import NotFound, ServerMisconfigured, ValidationFailed
from study_app.core.routing import TASK_COUNT, Step, chat_step, post_survey_step, step_to_path
from study_app.core.timeutil import utcnow
from study_app.crud import task_session as crud_task_session
from study_app.models.chat import TaskSession
from study_app.models.enums import CloseReason, SurveyPhase
from study_app.models.participant import Participant
from study_app.models.study import TaskDefinition
from study_app.schemas.survey import SurveyView
from study_app.schemas.task import TaskView
from study_app.services.chat_ledger import chat_ledger
from study_app.services.participant_state import participant_state
from study_app.services.side_panel import side_panel_tracker
from study_app.services.survey_service import survey_service, task_post_phase

logger = logging.getLogger(__name__)


def parse_task_number(raw) -> int:
    try:
        task_number = int(raw)
    except (TypeError, ValueError):
        raise ValidationFailed("Invalid taskNumber.")
    if task_number < 1 or task_number > TASK_COUNT:
        raise ValidationFailed("Invalid taskNumber.")
    return task_number


class TaskFlow:

    # ------------------------------------------------------------------ tasks

    @staticmethod
    def load_task(db: Session, participant: Participant, task_number: int) -> TaskView:
        """
        加载任务页面

        确保任务会话存在（并发安全），首次加载记录聊天开始时间，并保持 currentTaskNumber 一致。

        Args:
            db: 数据库会话
            participant: 当前参与者
            task_number: 任务编号

        Returns:
            TaskView: 任务标题、说明以及侧边栏开关
        """
        participant_state.require_step(participant, chat_step(task_number))

        definition = (
            db.query(TaskDefinition)
            .filter(TaskDefinition.study_id == participant.study_id, TaskDefinition.task_number == task_number)
            .first()
        )
        if definition is None:
            raise ServerMisconfigured("TaskDefinition not found.")

        task_session = crud_task_session.ensure(db, participant_id=participant.id, task_number=task_number)

        changed = False
        if task_session.chat_started_at is None:
            task_session.chat_started_at = utcnow()
            changed = True
        if participant.current_task_number != task_number:
            participant.current_task_number = task_number
            changed = True
        if changed:
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise

        return TaskView(
            task_number=task_number,
            title=definition.title,
            prompt_markdown=definition.prompt_markdown,
            side_panel_enabled=bool(participant.side_panel_enabled),
        )

    @staticmethod
    def mark_ready(db: Session, participant: Participant, task_number: int) -> str:
        """
        参与者结束聊天、准备回答任务问题

        记录准备时间与聊天结束时间，以 TASK_FINISHED 关闭所有 ACTIVE 线程，
        并推进到 TASKn_POST_SURVEY。随后尽力关闭仍打开的侧边栏区间。

        Returns:
            str: 任务后问卷的路由
        """
        participant_state.require_step(participant, chat_step(task_number))

        task_session = crud_task_session.get_by_participant_task(
            db, participant_id=participant.id, task_number=task_number
        )
        if task_session is None:
            raise NotFound("TaskSession not found for participant/taskNumber.")
        task_session_id = task_session.id

        now = utcnow()
        try:
            task_session.ready_to_answer_at = now
            task_session.chat_ended_at = now
            chat_ledger.close_active_threads(
                db,
                task_session_id=task_session_id,
                reason=CloseReason.TASK_FINISHED,
                closed_at=now,
            )
            participant_state.advance_to_post_survey(participant, task_number)
            db.commit()
        except Exception:
            db.rollback()
            raise

        side_panel_tracker.finalize_for_session(db, participant, task_session_id)
        return f"/study/{participant.access_code}/task/{task_number}/post"

    # ---------------------------------------------------------------- surveys

    @staticmethod
    def load_pre_survey(db: Session, participant: Participant) -> SurveyView:
        participant_state.require_step(participant, Step.PRE_SURVEY)
        instance = survey_service.ensure_instance(db, participant, SurveyPhase.PRE)
        return survey_service.build_view(instance)

    @staticmethod
    def submit_pre_survey(db: Session, participant: Participant, answers: List) -> str:
        participant_state.require_step(participant, Step.PRE_SURVEY)
        survey_service.submit(
            db, participant, SurveyPhase.PRE, answers,
            advance=participant_state.advance_after_pre_survey,
        )
        return step_to_path(participant.access_code, participant.current_step)

    @staticmethod
    def load_post_survey(db: Session, participant: Participant, task_number: int) -> SurveyView:
        """加载任务后问卷，首次加载时记录问卷开始时间"""
        participant_state.require_step(participant, post_survey_step(task_number))

        task_session = crud_task_session.ensure(db, participant_id=participant.id, task_number=task_number)
        if task_session.post_survey_started_at is None:
            try:
                db.query(TaskSession).filter(
                    TaskSession.id == task_session.id,
                    TaskSession.post_survey_started_at.is_(None),
                ).update({TaskSession.post_survey_started_at: utcnow()}, synchronize_session=False)
                db.commit()
            except Exception:
                db.rollback()
                raise

        instance = survey_service.ensure_instance(db, participant, task_post_phase(task_number))
        return survey_service.build_view(instance)

    @staticmethod
    def submit_post_survey(db: Session, participant: Participant, task_number: int, answers: List) -> str:
        participant_state.require_step(participant, post_survey_step(task_number))

        task_session = crud_task_session.ensure(db, participant_id=participant.id, task_number=task_number)
        task_session_id = task_session.id

        def stamp_submitted(_participant: Participant) -> None:
            db.query(TaskSession).filter(TaskSession.id == task_session_id).update(
                {TaskSession.post_survey_submitted_at: utcnow()},
                synchronize_session=False,
            )

        survey_service.submit(
            db, participant, task_post_phase(task_number), answers,
            advance=lambda p: participant_state.advance_after_task_post_survey(p, task_number),
            on_submitted=stamp_submitted,
        )
        side_panel_tracker.finalize_for_session(db, participant, task_session_id)
        return step_to_path(participant.access_code, participant.current_step)

    @staticmethod
    def load_final_survey(db: Session, participant: Participant) -> SurveyView:
        participant_state.require_step(participant, Step.FINAL_SURVEY)
        instance = survey_service.ensure_instance(db, participant, SurveyPhase.FINAL)
        return survey_service.build_view(instance)

    @staticmethod
    def submit_final_survey(db: Session, participant: Participant, answers: List) -> str:
        participant_state.require_step(participant, Step.FINAL_SURVEY)
        survey_service.submit(
            db, participant, SurveyPhase.FINAL, answers,
            advance=participant_state.complete,
        )
        return step_to_path(participant.access_code, participant.current_step)


task_flow = TaskFlow()
