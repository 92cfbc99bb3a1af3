import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from study_app.crud.base import CRUDBase
from study_app.models.chat import TaskSession

logger = logging.getLogger(__name__)


class CRUDTaskSession(CRUDBase[TaskSession]):
    def get_by_participant_task(self, db: Session, *, participant_id: str, task_number: int) -> Optional[TaskSession]:
        return (
            db.query(self.model)
            .filter(self.model.participant_id == participant_id, self.model.task_number == task_number)
            .first()
        )

    def ensure(self, db: Session, *, participant_id: str, task_number: int) -> TaskSession:
        """
        获取或创建任务会话（并发安全）

        插入冲突时回滚并重新读取胜出方的记录。会提交事务。

        Args:
            db: 数据库会话
            participant_id: 参与者ID
            task_number: 任务编号

        Returns:
            TaskSession: 任务会话
        """
        existing = self.get_by_participant_task(db, participant_id=participant_id, task_number=task_number)
        if existing:
            return existing

        try:
            created = self.create(db, obj_in={"participant_id": participant_id, "task_number": task_number})
            db.commit()
            return created
        except IntegrityError:
            db.rollback()
            logger.info("TaskSession race for participant=%s task=%s, re-reading", participant_id, task_number)
            winner = self.get_by_participant_task(db, participant_id=participant_id, task_number=task_number)
            if winner is None:
                raise
            return winner


task_session = CRUDTaskSession(TaskSession)
