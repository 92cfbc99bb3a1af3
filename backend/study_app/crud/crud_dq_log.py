from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from study_app.crud.base import CRUDBase
from study_app.models.audit import ThreadDataQualityLog


class CRUDThreadDataQualityLog(CRUDBase[ThreadDataQualityLog]):
    def append(
            self,
            db: Session,
            *,
            lang_graph_thread_id: str,
            indicators: Dict[str, Any],
            used_tables: List[str],
            main_sql: Optional[str],
            dq_sql: Optional[str],
    ) -> ThreadDataQualityLog:
        """追加一行审计记录并提交"""
        row = self.create(db, obj_in={
            "lang_graph_thread_id": lang_graph_thread_id,
            "indicators": indicators,
            "used_tables": list(used_tables),
            "main_sql": main_sql,
            "dq_sql": dq_sql,
        })
        db.commit()
        return row

    def get_latest(self, db: Session, *, lang_graph_thread_id: str) -> Optional[ThreadDataQualityLog]:
        return (
            db.query(self.model)
            .filter(self.model.lang_graph_thread_id == lang_graph_thread_id)
            .order_by(self.model.created_at.desc(), self.model.id.desc())
            .first()
        )


dq_log = CRUDThreadDataQualityLog(ThreadDataQualityLog)
