# backend/study_app/services/chat_ledger.py
"""
任务/聊天会话台账。

每个任务会话同一时刻最多一个 ACTIVE 线程；重启次数是派生值
max(0, 线程数 - 1)，每次确保线程时都会重新计算，以容忍丢失的关闭事件。
并发的重复调用通过唯一约束冲突后重新读取来收敛。
"""
import logging
import time
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from study_app.agent.messages import content_to_visible_string, to_json_value
from study_app.core.config import settings
from study_app.core.errors import Forbidden, NotFound, StudyAPIError, ValidationFailed
from study_app.core.timeutil import utcnow
from study_app.crud import chat_message as crud_chat_message
from study_app.crud import chat_thread as crud_chat_thread
from study_app.crud import task_session as crud_task_session
from study_app.models.chat import ChatMessage, ChatThread, TaskSession
from study_app.models.enums import ChatRole, CloseReason, ThreadStatus
from study_app.models.participant import Participant

logger = logging.getLogger(__name__)

MESSAGE_TYPE_TO_ROLE = {
    "human": ChatRole.USER,
    "ai": ChatRole.ASSISTANT,
    "tool": ChatRole.TOOL,
}


class ChatLedger:
    """聊天线程与消息台账"""

    def __init__(
            self,
            lookup_attempts: Optional[int] = None,
            lookup_delay_ms: Optional[int] = None,
            message_insert_attempts: Optional[int] = None,
    ):
        self.lookup_attempts = lookup_attempts or settings.THREAD_LOOKUP_ATTEMPTS
        self.lookup_delay_ms = lookup_delay_ms or settings.THREAD_LOOKUP_DELAY_MS
        self.message_insert_attempts = message_insert_attempts or settings.MESSAGE_INSERT_ATTEMPTS

    # ------------------------------------------------------------------ threads

    @staticmethod
    def reconcile_restart_count(db: Session, task_session: TaskSession) -> int:
        """按线程实际数量重新计算重启次数"""
        db.flush()
        thread_count = crud_chat_thread.count_for_session(db, task_session_id=task_session.id)
        task_session.chat_restart_count = max(0, thread_count - 1)
        db.flush()
        return task_session.chat_restart_count

    @staticmethod
    def close_active_threads(
            db: Session,
            *,
            task_session_id: int,
            reason: CloseReason,
            closed_at: datetime,
            exclude_thread_id: Optional[int] = None,
    ) -> int:
        """关闭任务会话中所有 ACTIVE 线程，返回关闭的数量（不提交）"""
        query = db.query(ChatThread).filter(
            ChatThread.task_session_id == task_session_id,
            ChatThread.status == ThreadStatus.ACTIVE.value,
        )
        if exclude_thread_id is not None:
            query = query.filter(ChatThread.id != exclude_thread_id)
        return query.update(
            {
                ChatThread.status: ThreadStatus.CLOSED.value,
                ChatThread.close_reason: reason.value,
                ChatThread.closed_at: closed_at,
            },
            synchronize_session="fetch",
        )

    @staticmethod
    def _assert_owner(thread: ChatThread, participant: Participant) -> None:
        if thread.task_session.participant_id != participant.id:
            raise Forbidden("Thread does not belong to participant.")

    def _ensure_in_transaction(
            self,
            db: Session,
            participant: Participant,
            lang_graph_thread_id: str,
            task_number: int,
    ) -> Tuple[ChatThread, bool]:
        now = utcnow()
        existing = crud_chat_thread.get_by_lang_graph_id(db, lang_graph_thread_id=lang_graph_thread_id)

        if existing is not None:
            self._assert_owner(existing, participant)
            task_session = existing.task_session
            if existing.status != ThreadStatus.ACTIVE.value:
                self.close_active_threads(
                    db,
                    task_session_id=task_session.id,
                    reason=CloseReason.RESTARTED,
                    closed_at=now,
                    exclude_thread_id=existing.id,
                )
                existing.status = ThreadStatus.ACTIVE.value
                existing.close_reason = None
                existing.closed_at = None
            if task_session.chat_started_at is None:
                task_session.chat_started_at = now
            self.reconcile_restart_count(db, task_session)
            return existing, False

        task_session = crud_task_session.get_by_participant_task(
            db, participant_id=participant.id, task_number=task_number
        )
        if task_session is None:
            raise NotFound("TaskSession not found for participant/taskNumber.")

        self.close_active_threads(
            db,
            task_session_id=task_session.id,
            reason=CloseReason.RESTARTED,
            closed_at=now,
        )
        restart_index = crud_chat_thread.count_for_session(db, task_session_id=task_session.id)
        thread = crud_chat_thread.create(db, obj_in={
            "task_session_id": task_session.id,
            "lang_graph_thread_id": lang_graph_thread_id,
            "status": ThreadStatus.ACTIVE.value,
            "restart_index": restart_index,
            "created_at": now,
        })
        if task_session.chat_started_at is None:
            task_session.chat_started_at = now
        self.reconcile_restart_count(db, task_session)
        return thread, True

    def ensure_thread(
            self,
            db: Session,
            participant: Participant,
            lang_graph_thread_id: str,
            task_number: Optional[int] = None,
    ) -> Tuple[ChatThread, bool]:
        """
        确保本地存在与Agent线程对应的 ChatThread

        Args:
            db: 数据库会话
            participant: 当前参与者
            lang_graph_thread_id: Agent线程ID
            task_number: 任务编号，缺省时使用参与者的当前任务

        Returns:
            Tuple[ChatThread, bool]: 线程以及是否新建
        """
        resolved_task_number = task_number or participant.current_task_number
        if not resolved_task_number:
            raise ValidationFailed("Missing taskNumber and participant.currentTaskNumber is null.")

        delay = self.lookup_delay_ms / 1000.0
        for attempt in range(self.lookup_attempts):
            try:
                thread, created = self._ensure_in_transaction(
                    db, participant, lang_graph_thread_id, resolved_task_number
                )
                db.commit()
                return thread, created
            except IntegrityError:
                # 同一线程ID被并发创建，或同一任务会话中另一个线程先成为 ACTIVE：回滚后重新执行，
                # 重新读取时会看到胜出方已提交的行
                db.rollback()
                logger.info("ChatThread conflict for %s (attempt %d), retrying", lang_graph_thread_id, attempt + 1)
            except Exception:
                db.rollback()
                raise
            if attempt + 1 < self.lookup_attempts:
                time.sleep(min(delay * (2 ** attempt), 0.5))

        logger.error("ChatThread %s could not be ensured after %d attempts", lang_graph_thread_id, self.lookup_attempts)
        raise StudyAPIError("Failed to ensure ChatThread (race).")

    def close_thread(
            self,
            db: Session,
            participant: Participant,
            lang_graph_thread_id: str,
            reason: CloseReason,
    ) -> bool:
        """
        关闭线程（幂等）

        不存在或已关闭的线程直接返回 False。只有从 ACTIVE 关闭成功的那一次
        才会累加重启次数（RESTARTED）或记录聊天结束时间（TASK_FINISHED，仅一次）。

        Returns:
            bool: 本次调用是否真正关闭了线程
        """
        thread = crud_chat_thread.get_by_lang_graph_id(db, lang_graph_thread_id=lang_graph_thread_id)
        if thread is None:
            return False
        self._assert_owner(thread, participant)
        if thread.status == ThreadStatus.CLOSED.value:
            return False

        now = utcnow()
        try:
            changed = (
                db.query(ChatThread)
                .filter(ChatThread.id == thread.id, ChatThread.status == ThreadStatus.ACTIVE.value)
                .update(
                    {
                        ChatThread.status: ThreadStatus.CLOSED.value,
                        ChatThread.close_reason: reason.value,
                        ChatThread.closed_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if changed:
                if reason == CloseReason.RESTARTED:
                    db.query(TaskSession).filter(TaskSession.id == thread.task_session_id).update(
                        {TaskSession.chat_restart_count: TaskSession.chat_restart_count + 1},
                        synchronize_session=False,
                    )
                if reason == CloseReason.TASK_FINISHED:
                    db.query(TaskSession).filter(
                        TaskSession.id == thread.task_session_id,
                        TaskSession.chat_ended_at.is_(None),
                    ).update({TaskSession.chat_ended_at: now}, synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return bool(changed)

    def close_abandoned_threads(self, db: Session, participant: Participant, inactive_since: datetime) -> int:
        """
        将参与者所有 ACTIVE 线程按放弃关闭，时间取上一次活跃时间（不提交）

        Returns:
            int: 关闭的线程数量
        """
        threads = crud_chat_thread.get_active_for_participant(db, participant_id=participant.id)
        if not threads:
            return 0

        sessions = {}
        for thread in threads:
            thread.status = ThreadStatus.CLOSED.value
            thread.close_reason = CloseReason.ABANDONED.value
            thread.closed_at = inactive_since
            sessions[thread.task_session_id] = thread.task_session

        for task_session in sessions.values():
            if task_session.chat_ended_at is None:
                task_session.chat_ended_at = inactive_since
            self.reconcile_restart_count(db, task_session)

        logger.info("Closed %d abandoned thread(s) for participant=%s", len(threads), participant.id)
        return len(threads)

    # ----------------------------------------------------------------- messages

    def _resolve_thread_for_message(
            self,
            db: Session,
            participant: Participant,
            lang_graph_thread_id: str,
            task_number: Optional[int],
    ) -> ChatThread:
        # 已存在的线程不重新激活：任务结束后仍可能收到迟到的消息
        existing = crud_chat_thread.get_by_lang_graph_id(db, lang_graph_thread_id=lang_graph_thread_id)
        if existing is not None:
            self._assert_owner(existing, participant)
            return existing
        thread, _ = self.ensure_thread(db, participant, lang_graph_thread_id, task_number)
        return thread

    def upsert_message(
            self,
            db: Session,
            participant: Participant,
            *,
            lang_graph_thread_id: str,
            task_number: Optional[int],
            message_type: str,
            content,
            agent_message_id: Optional[str] = None,
            tool_name: Optional[str] = None,
            tool_call_id: Optional[str] = None,
    ) -> Tuple[ChatMessage, bool]:
        """
        追加一条聊天消息

        按Agent消息ID全局去重；序号为线程内 max(sequence)+1，序号冲突时有限次重试。

        Returns:
            Tuple[ChatMessage, bool]: 消息以及是否新建
        """
        thread = self._resolve_thread_for_message(db, participant, lang_graph_thread_id, task_number)
        thread_id = thread.id
        task_session_id = thread.task_session_id
        agent_message_id = (agent_message_id or "").strip() or None

        if agent_message_id:
            existing = crud_chat_message.get_by_agent_message_id(db, agent_message_id=agent_message_id)
            if existing is not None:
                return existing, False

        role = MESSAGE_TYPE_TO_ROLE.get(message_type, ChatRole.SYSTEM)
        visible = content_to_visible_string(content)
        metadata = {
            "langGraphMessageId": agent_message_id,
            "rawContent": to_json_value(content),
            "toolName": tool_name,
            "toolCallId": tool_call_id,
        }

        for attempt in range(1, self.message_insert_attempts + 1):
            try:
                now = utcnow()
                sequence = crud_chat_message.max_sequence(db, chat_thread_id=thread_id) + 1
                message = crud_chat_message.create(db, obj_in={
                    "chat_thread_id": thread_id,
                    "role": role.value,
                    "content": visible,
                    "sequence": sequence,
                    "agent_message_id": agent_message_id,
                    "meta": metadata,
                    "created_at": now,
                })

                if role == ChatRole.USER:
                    db.query(TaskSession).filter(TaskSession.id == task_session_id).update(
                        {
                            TaskSession.has_chatted_at_least_once: True,
                            TaskSession.user_message_count: TaskSession.user_message_count + 1,
                        },
                        synchronize_session=False,
                    )
                    db.query(TaskSession).filter(
                        TaskSession.id == task_session_id,
                        TaskSession.chat_started_at.is_(None),
                    ).update({TaskSession.chat_started_at: now}, synchronize_session=False)
                elif role == ChatRole.ASSISTANT:
                    db.query(TaskSession).filter(TaskSession.id == task_session_id).update(
                        {TaskSession.assistant_message_count: TaskSession.assistant_message_count + 1},
                        synchronize_session=False,
                    )

                db.commit()
                return message, True
            except IntegrityError:
                db.rollback()
                if agent_message_id:
                    existing = crud_chat_message.get_by_agent_message_id(db, agent_message_id=agent_message_id)
                    if existing is not None:
                        return existing, False
                logger.info("Sequence collision on thread=%s (attempt %d)", thread_id, attempt)
            except Exception:
                db.rollback()
                raise

        raise StudyAPIError("Failed to persist chat message.")


chat_ledger = ChatLedger()
