import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from sqlalchemy.orm import Session

from study_app.config.dependency_injection import (
    authenticate_management_admin,
    authenticate_participant,
    get_current_participant,
    get_db,
)
from study_app.core.config import settings
from study_app.core.errors import Forbidden, NotFound, StudyAPIError, ValidationFailed
from study_app.core.timeutil import isoformat
from study_app.crud import chat_thread as crud_chat_thread
from study_app.crud import dq_log as crud_dq_log
from study_app.models.dataset import DatasetTable
from study_app.models.participant import Participant
from study_app.schemas.chat import (
    MessageUpsertRequest,
    MessageUpsertResponse,
    ThreadCloseRequest,
    ThreadCloseResponse,
    ThreadUpsertRequest,
    ThreadUpsertResponse,
)
from study_app.services.chat_ledger import chat_ledger

logger = logging.getLogger(__name__)

router = APIRouter()

NO_STORE = {"Cache-Control": "no-store"}


@router.post("/thread/upsert", response_model=ThreadUpsertResponse, response_model_by_alias=True)
def upsert_thread(
        thread_in: ThreadUpsertRequest,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    """
    确保Agent线程在本地有对应的 ChatThread

    新线程会将同一任务的其他 ACTIVE 线程以 RESTARTED 关闭；重启次数按线程数重新推导。

    Args:
        thread_in: Agent线程ID与可选的任务编号
        participant: 当前参与者
        db: 数据库会话

    Returns:
        ThreadUpsertResponse: 线程行ID、是否新建以及重启序号
    """
    thread, created = chat_ledger.ensure_thread(
        db, participant, thread_in.lang_graph_thread_id, thread_in.task_number
    )
    return ThreadUpsertResponse(
        created=created,
        chat_thread_db_id=thread.id,
        lang_graph_thread_id=thread.lang_graph_thread_id,
        restart_index=thread.restart_index,
    )


@router.post("/thread/close", response_model=ThreadCloseResponse, response_model_by_alias=True)
def close_thread(
        close_in: ThreadCloseRequest,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    """关闭线程（幂等：不存在或已关闭的线程返回 closed=false）"""
    closed = chat_ledger.close_thread(db, participant, close_in.lang_graph_thread_id, close_in.reason)
    return ThreadCloseResponse(closed=closed)


@router.post("/message/upsert", response_model=MessageUpsertResponse, response_model_by_alias=True)
def upsert_message(
        message_in: MessageUpsertRequest,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    message, created = chat_ledger.upsert_message(
        db,
        participant,
        lang_graph_thread_id=message_in.lang_graph_thread_id,
        task_number=message_in.task_number,
        message_type=message_in.message.type,
        content=message_in.message.content,
        agent_message_id=message_in.message.id,
        tool_name=message_in.message.name,
        tool_call_id=message_in.message.tool_call_id,
    )
    return MessageUpsertResponse(
        created=created,
        chat_message_id=message.id,
        sequence=message.sequence,
        already_persisted=not created,
    )


def _group_datasets(db: Session, used_tables: List[str]) -> Dict[str, Any]:
    """将审计记录中的表名关联到数据集目录；无法匹配的表名单独列出"""
    links = (
        db.query(DatasetTable).filter(DatasetTable.table_name.in_(used_tables)).all()
        if used_tables else []
    )
    matched = {link.table_name for link in links}

    grouped: Dict[int, Dict[str, Any]] = {}
    for link in links:
        dataset = link.dataset
        if dataset is None:
            continue
        entry = grouped.get(dataset.id)
        if entry is None:
            entry = {
                "key": dataset.key,
                "displayName": dataset.display_name,
                "origin": dataset.origin,
                "author": dataset.author,
                "fileType": dataset.file_type,
                "fileSizeBytes": str(dataset.file_size_bytes) if dataset.file_size_bytes is not None else None,
                "recordCount": dataset.record_count,
                "createdAt": isoformat(dataset.created_at),
                "updatedAt": isoformat(dataset.updated_at),
                "tables": [],
            }
            grouped[dataset.id] = entry
        entry["tables"].append(link.table_name)

    return {
        "datasets": list(grouped.values()),
        "unmatchedTables": [table for table in used_tables if table not in matched],
    }


def _resolve_viewer(db: Session, request: Request, authorization: Optional[str]) -> Optional[Participant]:
    """研究参与者优先；参与者认证失败时改用管理端Cookie（管理员返回None）"""
    try:
        return authenticate_participant(db, authorization)
    except StudyAPIError:
        db.rollback()
    authenticate_management_admin(db, request.cookies.get(settings.MANAGEMENT_SESSION_COOKIE))
    return None


@router.get("/thread/dq/latest")
def get_latest_dq(
        request: Request,
        response: Response,
        threadId: Optional[str] = None,
        authorization: Optional[str] = Header(None),
        db: Session = Depends(get_db),
):
    """
    读取线程最新的数据质量审计记录

    参与者只能读取自己的线程；管理员（Cookie会话）可以读取任意线程。

    Args:
        threadId: Agent线程ID

    Returns:
        {ok, data}：data 为 None 或审计记录加上关联的数据集
    """
    response.headers.update(NO_STORE)
    try:
        thread_id = (threadId or "").strip()
        if not thread_id:
            raise ValidationFailed("Missing threadId")

        participant = _resolve_viewer(db, request, authorization)

        latest = crud_dq_log.get_latest(db, lang_graph_thread_id=thread_id)
        if latest is None:
            return {"ok": True, "data": None}

        if participant is not None:
            thread = crud_chat_thread.get_by_lang_graph_id(db, lang_graph_thread_id=thread_id)
            if thread is None:
                raise NotFound("Thread not found in app DB.")
            if thread.task_session.participant_id != participant.id:
                raise Forbidden("Forbidden")
    except StudyAPIError as e:
        e.headers = {**(e.headers or {}), **NO_STORE}
        raise

    used_tables = list(latest.used_tables or [])
    data = {
        "id": latest.id,
        "createdAt": isoformat(latest.created_at),
        "indicators": latest.indicators,
        "usedTables": used_tables,
        "mainSql": latest.main_sql,
        "dqSql": latest.dq_sql,
    }
    data.update(_group_datasets(db, used_tables))
    return {"ok": True, "data": data}
