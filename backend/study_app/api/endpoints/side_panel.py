import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from study_app.config.dependency_injection import get_current_participant, get_db
from study_app.models.participant import Participant
from study_app.schemas.chat import SidePanelEventRequest, SidePanelEventResponse
from study_app.services.side_panel import side_panel_tracker

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/event", response_model=SidePanelEventResponse, response_model_by_alias=True)
def side_panel_event(
        event: SidePanelEventRequest,
        participant: Participant = Depends(get_current_participant),
        db: Session = Depends(get_db),
):
    """
    记录侧边栏打开/关闭事件

    事件记录是尽力而为的：过期的打开事件、没有打开区间的关闭事件以及内部错误
    都返回 ok=true, ignored=true，不影响前端。

    Args:
        event: open=true 表示打开，false 表示关闭
        participant: 当前参与者
        db: 数据库会话

    Returns:
        SidePanelEventResponse: 涉及的区间ID或 ignored 标记
    """
    try:
        if event.open:
            span = side_panel_tracker.open(db, participant, event.lang_graph_thread_id)
        else:
            span = side_panel_tracker.close(db, participant, event.lang_graph_thread_id)
    except Exception:
        logger.exception(
            "Side panel %s event failed for participant=%s",
            "open" if event.open else "close", participant.id,
        )
        db.rollback()
        return SidePanelEventResponse(ignored=True)

    if span is None:
        return SidePanelEventResponse(ignored=True)
    return SidePanelEventResponse(span_id=span.id)
