# backend/study_app/services/participant_state.py
"""
参与者状态机。

步骤只能沿固定顺序单向前进，迁移只由以下接口触发：
会话开始、问卷提交、准备回答。每个研究接口先校验当前步骤，
不一致时返回 409 并携带规范路由。
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from study_app.core.errors import Forbidden, NotFound, WrongStep
from study_app.core.routing import (
    TASK_COUNT,
    Step,
    chat_step,
    post_survey_step,
    step_to_path,
    task_number_for_step,
)
from study_app.core.timeutil import utcnow
from study_app.crud import access_log, participant as crud_participant
from study_app.models.enums import ParticipantStatus
from study_app.models.participant import Participant

logger = logging.getLogger(__name__)

BLOCKED_STATUSES = {ParticipantStatus.INVALIDATED.value, ParticipantStatus.WITHDRAWN.value}


class ParticipantStateMachine:
    """参与者步骤迁移的唯一入口"""

    @staticmethod
    def redirect_for(participant: Participant) -> str:
        return step_to_path(participant.access_code, participant.current_step)

    def require_step(self, participant: Participant, expected: Step) -> None:
        """
        校验参与者当前步骤

        Args:
            participant: 参与者
            expected: 接口期望的步骤

        Raises:
            WrongStep: 步骤不一致，携带规范路由
        """
        if participant.current_step != expected.value:
            redirect_to = self.redirect_for(participant)
            logger.info(
                "Wrong step for participant=%s: at %s, expected %s",
                participant.id, participant.current_step, expected.value,
            )
            raise WrongStep(redirect_to)

    @staticmethod
    def ensure_not_blocked(participant: Participant) -> None:
        if participant.status in BLOCKED_STATUSES:
            raise Forbidden("Participant is not allowed to continue.")

    def start_session(
            self,
            db: Session,
            *,
            access_code: str,
            user_agent: Optional[str] = None,
            client_meta: Optional[Dict[str, Any]] = None,
    ) -> Participant:
        """
        输入访问码开始（或重新进入）研究

        在一个事务中写入访问日志、增加重入次数、首次进入时记录开始时间，
        并将 WELCOME→PRE_SURVEY、CREATED→STARTED。

        Args:
            db: 数据库会话
            access_code: 访问码
            user_agent: 浏览器UA
            client_meta: 客户端元数据

        Returns:
            Participant: 更新后的参与者
        """
        participant = crud_participant.get_by_access_code(db, access_code=access_code)
        if participant is None:
            raise NotFound("Invalid access code.")
        self.ensure_not_blocked(participant)

        now = utcnow()
        try:
            access_log.create(db, obj_in={
                "participant_id": participant.id,
                "entered_at": now,
                "user_agent": user_agent,
                "client_meta": client_meta,
            })
            participant.reentry_count = (participant.reentry_count or 0) + 1
            participant.last_active_at = now
            if participant.started_at is None:
                participant.started_at = now
            if participant.status == ParticipantStatus.CREATED.value:
                participant.status = ParticipantStatus.STARTED.value
            if participant.current_step == Step.WELCOME.value:
                participant.current_step = Step.PRE_SURVEY.value
                participant.current_task_number = None
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(participant)
        logger.info("Session started for participant=%s step=%s", participant.id, participant.current_step)
        return participant

    # ---- 迁移：只修改内存中的对象，由调用方在同一事务中提交 ----

    @staticmethod
    def advance_after_pre_survey(participant: Participant) -> None:
        participant.current_step = chat_step(1).value
        participant.current_task_number = 1

    @staticmethod
    def advance_to_post_survey(participant: Participant, task_number: int) -> None:
        participant.current_step = post_survey_step(task_number).value
        participant.current_task_number = task_number

    @staticmethod
    def advance_after_task_post_survey(participant: Participant, task_number: int) -> None:
        if task_number < TASK_COUNT:
            participant.current_step = chat_step(task_number + 1).value
            participant.current_task_number = task_number + 1
        else:
            participant.current_step = Step.FINAL_SURVEY.value
            participant.current_task_number = None

    @staticmethod
    def complete(participant: Participant) -> None:
        now = utcnow()
        participant.status = ParticipantStatus.COMPLETED.value
        participant.current_step = Step.DONE.value
        participant.completed_at = now
        participant.current_task_number = None

    @staticmethod
    def is_consistent(participant: Participant) -> bool:
        """currentTaskNumber 非空当且仅当当前步骤是任务步骤，且编号一致"""
        task_number = task_number_for_step(participant.current_step)
        return task_number == participant.current_task_number


participant_state = ParticipantStateMachine()
