# backend/study_app/services/side_panel.py
"""
侧边栏使用区间的记录。

打开事件只在参与者处于当前任务的 TASKn_CHAT 步骤时接受，其余情况静默忽略；
关闭事件总是接受，并关闭该参与者所有任务会话中最近打开的区间。
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from study_app.core.routing import chat_step
from study_app.core.timeutil import utcnow
from study_app.crud import chat_message as crud_chat_message
from study_app.crud import chat_thread as crud_chat_thread
from study_app.crud import side_panel_span as crud_side_panel_span
from study_app.crud import task_session as crud_task_session
from study_app.models.chat import ChatThread, SidePanelSpan, TaskSession
from study_app.models.participant import Participant

logger = logging.getLogger(__name__)


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def finalize_end_time(task_session: TaskSession, participant: Participant, now: Optional[datetime] = None) -> datetime:
    """按偏好顺序选取强制关闭区间的结束时间"""
    candidates = (
        task_session.chat_ended_at,
        task_session.ready_to_answer_at,
        task_session.post_survey_started_at,
        task_session.post_survey_submitted_at,
        participant.completed_at,
        participant.last_active_at,
    )
    for value in candidates:
        if value is not None:
            return value
    return now or utcnow()


class SidePanelTracker:

    @staticmethod
    def _last_sequence(db: Session, thread_id: Optional[int]) -> Optional[int]:
        if thread_id is None:
            return None
        sequence = crud_chat_message.max_sequence(db, chat_thread_id=thread_id)
        return sequence or None

    @staticmethod
    def _thread_for_session(db: Session, task_session_id: int, lang_graph_thread_id: Optional[str]) -> Optional[ChatThread]:
        if lang_graph_thread_id:
            thread = crud_chat_thread.get_by_lang_graph_id(db, lang_graph_thread_id=lang_graph_thread_id)
            if thread is not None and thread.task_session_id == task_session_id:
                return thread
        active = crud_chat_thread.get_active_for_session(db, task_session_id=task_session_id)
        return active[0] if active else None

    def _close_span(self, db: Session, span: SidePanelSpan, closed_at: datetime, closed_after_seq: Optional[int]) -> bool:
        # 条件更新保证同一区间只被记账一次
        changed = (
            db.query(SidePanelSpan)
            .filter(SidePanelSpan.id == span.id, SidePanelSpan.closed_at.is_(None))
            .update(
                {
                    SidePanelSpan.closed_at: closed_at,
                    SidePanelSpan.closed_after_message_seq: closed_after_seq,
                },
                synchronize_session=False,
            )
        )
        if changed:
            db.query(TaskSession).filter(TaskSession.id == span.task_session_id).update(
                {
                    TaskSession.side_panel_close_count: TaskSession.side_panel_close_count + 1,
                    TaskSession.side_panel_open_ms: TaskSession.side_panel_open_ms + _elapsed_ms(span.opened_at, closed_at),
                },
                synchronize_session=False,
            )
        return bool(changed)

    def open(self, db: Session, participant: Participant, lang_graph_thread_id: Optional[str] = None) -> Optional[SidePanelSpan]:
        """
        记录侧边栏打开

        Args:
            db: 数据库会话
            participant: 当前参与者
            lang_graph_thread_id: 前端当前的Agent线程ID

        Returns:
            Optional[SidePanelSpan]: 打开的区间；事件被忽略时返回None
        """
        task_number = participant.current_task_number
        if not task_number or participant.current_step != chat_step(task_number).value:
            return None

        task_session = crud_task_session.get_by_participant_task(
            db, participant_id=participant.id, task_number=task_number
        )
        if task_session is None:
            return None

        thread = self._thread_for_session(db, task_session.id, lang_graph_thread_id)
        thread_id = thread.id if thread else None
        sequence = self._last_sequence(db, thread_id)

        open_span = crud_side_panel_span.get_open_for_session(db, task_session_id=task_session.id)
        if open_span is not None:
            if open_span.chat_thread_id is None and thread_id is not None:
                open_span.chat_thread_id = thread_id
                if open_span.opened_after_message_seq is None:
                    open_span.opened_after_message_seq = sequence
                db.commit()
            return open_span

        task_session_id = task_session.id
        try:
            span = crud_side_panel_span.create(db, obj_in={
                "task_session_id": task_session_id,
                "chat_thread_id": thread_id,
                "opened_at": utcnow(),
                "opened_after_message_seq": sequence,
            })
            db.query(TaskSession).filter(TaskSession.id == task_session_id).update(
                {TaskSession.side_panel_open_count: TaskSession.side_panel_open_count + 1},
                synchronize_session=False,
            )
            db.commit()
            return span
        except IntegrityError:
            db.rollback()
            logger.info("Concurrent side panel open on task_session=%s, using existing span", task_session_id)
            return crud_side_panel_span.get_open_for_session(db, task_session_id=task_session_id)

    def close(self, db: Session, participant: Participant, lang_graph_thread_id: Optional[str] = None) -> Optional[SidePanelSpan]:
        """
        记录侧边栏关闭：关闭该参与者所有会话中最近打开的区间

        Returns:
            Optional[SidePanelSpan]: 被关闭的区间；没有打开的区间时返回None
        """
        span = crud_side_panel_span.get_latest_open_for_participant(db, participant_id=participant.id)
        if span is None:
            return None

        thread_id = span.chat_thread_id
        if thread_id is None:
            thread = self._thread_for_session(db, span.task_session_id, lang_graph_thread_id)
            thread_id = thread.id if thread else None
            span.chat_thread_id = thread_id
        sequence = self._last_sequence(db, thread_id)

        self._close_span(db, span, utcnow(), sequence)
        db.commit()
        return span

    def finalize_for_session(self, db: Session, participant: Participant, task_session_id: int) -> None:
        """
        在阶段切换点强制关闭仍打开的区间

        在主事务提交之后以独立的短事务执行，失败只记录日志。
        """
        try:
            span = crud_side_panel_span.get_open_for_session(db, task_session_id=task_session_id)
            if span is None:
                return
            task_session = crud_task_session.get(db, task_session_id)
            end = finalize_end_time(task_session, participant)

            thread_id = span.chat_thread_id
            if thread_id is None:
                latest = (
                    db.query(ChatThread)
                    .filter(ChatThread.task_session_id == task_session_id)
                    .order_by(ChatThread.created_at.desc(), ChatThread.id.desc())
                    .first()
                )
                thread_id = latest.id if latest else None
                span.chat_thread_id = thread_id

            self._close_span(db, span, end, self._last_sequence(db, thread_id))
            db.commit()
        except Exception:
            logger.exception("Finalizing side panel span failed for task_session=%s", task_session_id)
            db.rollback()


side_panel_tracker = SidePanelTracker()
