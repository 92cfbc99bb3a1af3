from typing import Optional
from sqlalchemy.orm import Session
from study_app.crud.base import CRUDBase
from study_app.models.participant import Participant, ParticipantAccessLog


class CRUDParticipant(CRUDBase[Participant]):
    def get_by_access_code(self, db: Session, *, access_code: str) -> Optional[Participant]:
        return db.query(self.model).filter(self.model.access_code == access_code).first()


class CRUDParticipantAccessLog(CRUDBase[ParticipantAccessLog]):
    pass


participant = CRUDParticipant(Participant)
access_log = CRUDParticipantAccessLog(ParticipantAccessLog)
