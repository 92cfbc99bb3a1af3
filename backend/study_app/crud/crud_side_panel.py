from typing import Optional

from sqlalchemy.orm import Session

from study_app.crud.base import CRUDBase
from study_app.models.chat import SidePanelSpan, TaskSession


class CRUDSidePanelSpan(CRUDBase[SidePanelSpan]):
    def get_open_for_session(self, db: Session, *, task_session_id: int) -> Optional[SidePanelSpan]:
        return (
            db.query(self.model)
            .filter(self.model.task_session_id == task_session_id, self.model.closed_at.is_(None))
            .order_by(self.model.opened_at.desc())
            .first()
        )

    def get_latest_open_for_participant(self, db: Session, *, participant_id: str) -> Optional[SidePanelSpan]:
        """返回该参与者所有任务会话中最近打开且未关闭的区间"""
        return (
            db.query(self.model)
            .join(TaskSession, TaskSession.id == self.model.task_session_id)
            .filter(TaskSession.participant_id == participant_id, self.model.closed_at.is_(None))
            .order_by(self.model.opened_at.desc(), self.model.id.desc())
            .first()
        )


side_panel_span = CRUDSidePanelSpan(SidePanelSpan)
