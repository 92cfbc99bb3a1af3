from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from study_app.config.dependency_injection import get_current_participant, get_db
from study_app.core.security import create_study_token
from study_app.core.timeutil import isoformat
from study_app.models.participant import Participant
from study_app.schemas.response import RedirectResponse
from study_app.schemas.session import HeartbeatResponse, SessionStartRequest, SessionStartResponse
from study_app.services.participant_state import participant_state

router = APIRouter()


@router.post("/session/start", response_model=SessionStartResponse, response_model_by_alias=True)
def start_session(
        session_in: SessionStartRequest,
        user_agent: Optional[str] = Header(None),
        db: Session = Depends(get_db),
):
    """
    输入访问码开始研究

    Args:
        session_in: 访问码与客户端元数据
        user_agent: 浏览器UA（写入访问日志）
        db: 数据库会话

    Returns:
        SessionStartResponse: Bearer令牌与当前步骤对应的路由
    """
    participant = participant_state.start_session(
        db,
        access_code=session_in.access_code.strip(),
        user_agent=user_agent,
        client_meta=session_in.client_meta,
    )
    token = create_study_token(participant.id, participant.access_code, bool(participant.side_panel_enabled))
    return SessionStartResponse(
        token=token,
        access_code=participant.access_code,
        redirect_to=participant_state.redirect_for(participant),
        side_panel_enabled=bool(participant.side_panel_enabled),
    )


@router.get("/resume", response_model=RedirectResponse, response_model_by_alias=True)
def resume(participant: Participant = Depends(get_current_participant)):
    """根据参与者当前步骤返回规范路由"""
    return RedirectResponse(redirect_to=participant_state.redirect_for(participant))


@router.post("/heartbeat", response_model=HeartbeatResponse, response_model_by_alias=True)
def heartbeat(participant: Participant = Depends(get_current_participant)):
    # lastActiveAt 已在认证依赖中刷新
    return HeartbeatResponse(last_active_at=isoformat(participant.last_active_at))
