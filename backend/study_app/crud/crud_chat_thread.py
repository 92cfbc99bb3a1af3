from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from study_app.crud.base import CRUDBase
from study_app.models.chat import ChatMessage, ChatThread, TaskSession
from study_app.models.enums import ThreadStatus


class CRUDChatThread(CRUDBase[ChatThread]):
    def get_by_lang_graph_id(self, db: Session, *, lang_graph_thread_id: str) -> Optional[ChatThread]:
        return db.query(self.model).filter(self.model.lang_graph_thread_id == lang_graph_thread_id).first()

    def count_for_session(self, db: Session, *, task_session_id: int) -> int:
        return db.query(func.count(self.model.id)).filter(self.model.task_session_id == task_session_id).scalar() or 0

    def get_active_for_session(self, db: Session, *, task_session_id: int) -> List[ChatThread]:
        return (
            db.query(self.model)
            .filter(self.model.task_session_id == task_session_id, self.model.status == ThreadStatus.ACTIVE.value)
            .order_by(self.model.created_at.desc(), self.model.id.desc())
            .all()
        )

    def get_active_for_participant(self, db: Session, *, participant_id: str) -> List[ChatThread]:
        return (
            db.query(self.model)
            .join(TaskSession, TaskSession.id == self.model.task_session_id)
            .filter(TaskSession.participant_id == participant_id, self.model.status == ThreadStatus.ACTIVE.value)
            .all()
        )


class CRUDChatMessage(CRUDBase[ChatMessage]):
    def get_by_agent_message_id(self, db: Session, *, agent_message_id: str) -> Optional[ChatMessage]:
        return db.query(self.model).filter(self.model.agent_message_id == agent_message_id).first()

    def max_sequence(self, db: Session, *, chat_thread_id: int) -> int:
        value = db.query(func.max(self.model.sequence)).filter(self.model.chat_thread_id == chat_thread_id).scalar()
        return value or 0


chat_thread = CRUDChatThread(ChatThread)
chat_message = CRUDChatMessage(ChatMessage)
