import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from study_app.crud.base import CRUDBase
from study_app.models.survey import SurveyAnswer, SurveyInstance, SurveyTemplate

logger = logging.getLogger(__name__)


class CRUDSurveyTemplate(CRUDBase[SurveyTemplate]):
    def get_by_key(self, db: Session, *, study_id: Optional[int], key: str) -> Optional[SurveyTemplate]:
        query = db.query(self.model).filter(self.model.key == key)
        if study_id is not None:
            query = query.filter(self.model.study_id == study_id)
        return query.order_by(self.model.id.asc()).first()


class CRUDSurveyInstance(CRUDBase[SurveyInstance]):
    def get_by_participant_phase(self, db: Session, *, participant_id: str, phase: str) -> Optional[SurveyInstance]:
        return (
            db.query(self.model)
            .filter(self.model.participant_id == participant_id, self.model.phase == phase)
            .first()
        )

    def ensure(self, db: Session, *, participant_id: str, phase: str, template_id: int) -> SurveyInstance:
        """
        获取或创建问卷实例（并发安全，不会因并发重复而抛出）

        Args:
            db: 数据库会话
            participant_id: 参与者ID
            phase: 问卷阶段
            template_id: 模板ID

        Returns:
            SurveyInstance: 问卷实例
        """
        existing = self.get_by_participant_phase(db, participant_id=participant_id, phase=phase)
        if existing:
            return existing

        try:
            created = self.create(db, obj_in={
                "participant_id": participant_id,
                "phase": phase,
                "template_id": template_id,
            })
            db.commit()
            return created
        except IntegrityError:
            db.rollback()
            logger.info("SurveyInstance race for participant=%s phase=%s, re-reading", participant_id, phase)
            winner = self.get_by_participant_phase(db, participant_id=participant_id, phase=phase)
            if winner is None:
                raise
            return winner


class CRUDSurveyAnswer(CRUDBase[SurveyAnswer]):
    pass


survey_template = CRUDSurveyTemplate(SurveyTemplate)
survey_instance = CRUDSurveyInstance(SurveyInstance)
survey_answer = CRUDSurveyAnswer(SurveyAnswer)
