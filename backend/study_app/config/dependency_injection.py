"""
FastAPI 依赖项：数据库会话、研究参与者认证、管理端认证。
"""
import logging
import re
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from study_app.core.config import settings
from study_app.core.errors import Forbidden, Unauthorized
from study_app.core.security import TokenError, verify_study_token, verify_token
from study_app.core.timeutil import utcnow
from study_app.crud import participant as crud_participant
from study_app.database import get_db
from study_app.models.enums import UserRole
from study_app.models.participant import Participant
from study_app.models.user import User
from study_app.services.chat_ledger import chat_ledger
from study_app.services.participant_state import participant_state

logger = logging.getLogger(__name__)

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def get_bearer_token(authorization: Optional[str]) -> Optional[str]:
    match = _BEARER_PATTERN.match((authorization or "").strip())
    return match.group(1).strip() if match else None


def _cleanup_abandoned(db: Session, participant: Participant, previous_active_at) -> None:
    """长时间无活动后返回：将遗留的 ACTIVE 线程按 ABANDONED 关闭（尽力而为）"""
    try:
        closed = chat_ledger.close_abandoned_threads(db, participant, previous_active_at)
        if closed:
            db.commit()
    except Exception:
        logger.exception("Lazy abandoned-chat cleanup failed for participant=%s", participant.id)
        db.rollback()


def authenticate_participant(db: Session, authorization: Optional[str]) -> Participant:
    """
    校验Bearer令牌并返回参与者

    每次成功认证都会刷新 lastActiveAt；若距上次活动超过 INACTIVITY_CLOSE_SECONDS，
    以上次活动时间关闭遗留的聊天线程。

    Raises:
        Unauthorized: 缺少令牌、令牌无效或过期、参与者不存在
        Forbidden: 参与者已被作废或退出
    """
    token = get_bearer_token(authorization)
    if not token:
        raise Unauthorized("Missing Authorization token.")

    try:
        payload = verify_study_token(token)
    except TokenError as e:
        raise Unauthorized(str(e))

    participant = crud_participant.get(db, payload["sub"])
    if participant is None:
        raise Unauthorized("Participant not found.")
    if participant.access_code != payload["accessCode"]:
        raise Unauthorized("Token does not match participant access code.")
    participant_state.ensure_not_blocked(participant)

    now = utcnow()
    previous_active_at = participant.last_active_at
    participant.last_active_at = now
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise

    if previous_active_at is not None:
        if now - previous_active_at > timedelta(seconds=settings.INACTIVITY_CLOSE_SECONDS):
            _cleanup_abandoned(db, participant, previous_active_at)

    return participant


def get_current_participant(
        authorization: Optional[str] = Header(None),
        db: Session = Depends(get_db),
) -> Participant:
    return authenticate_participant(db, authorization)


def authenticate_management_admin(db: Session, cookie_value: Optional[str]) -> User:
    """
    校验管理端会话Cookie，要求用户角色为 ADMIN

    Raises:
        Unauthorized: Cookie缺失、无效或过期，用户不存在
        Forbidden: 用户不是管理员
    """
    if not cookie_value:
        raise Unauthorized("Missing management session.")
    try:
        payload = verify_token(cookie_value)
    except TokenError:
        raise Unauthorized("Invalid or expired session.")

    if not payload.get("sub"):
        raise Unauthorized("Invalid session payload.")
    if payload.get("type") and payload["type"] != "session":
        raise Unauthorized("Invalid session type.")

    user = db.get(User, str(payload["sub"]))
    if user is None:
        raise Unauthorized("User not found.")
    if user.role != UserRole.ADMIN.value:
        raise Forbidden("Forbidden.")
    return user