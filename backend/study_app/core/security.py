"""
无服务端存储的签名令牌。

令牌格式为 header.payload.signature（base64url，无填充），签名使用 HMAC-SHA256。
研究参与者的Bearer令牌和管理端会话Cookie使用同一套签名逻辑。
"""
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

from study_app.core.config import settings

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenError(Exception):
    """令牌无效或已过期"""


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("utf-8", "surrogatepass"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def sign_token(payload: Dict[str, Any], secret: Optional[str] = None) -> str:
    secret = secret or settings.AUTH_SECRET
    header_part = _b64url_encode(json.dumps(_HEADER, separators=(",", ":")).encode("utf-8"))
    payload_part = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_part}.{payload_part}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def verify_token(token: str, secret: Optional[str] = None, now: Optional[int] = None) -> Dict[str, Any]:
    """
    校验令牌签名与有效期

    Args:
        token: 紧凑格式令牌
        secret: 签名密钥，默认使用 AUTH_SECRET
        now: 当前Unix时间（秒），便于测试

    Returns:
        Dict[str, Any]: 令牌载荷

    Raises:
        TokenError: 格式错误、签名不匹配或已过期
    """
    secret = secret or settings.AUTH_SECRET
    parts = (token or "").split(".")
    if len(parts) != 3:
        raise TokenError("Invalid token format.")

    header_part, payload_part, signature = parts
    expected = _sign(f"{header_part}.{payload_part}", secret)
    # 请求头按 latin-1 解码，签名可能含非ASCII字符，按字节比较
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "surrogatepass")):
        raise TokenError("Invalid token signature.")

    try:
        payload = json.loads(_b64url_decode(payload_part))
    except (ValueError, UnicodeDecodeError) as exc:
        raise TokenError("Invalid token payload.") from exc
    if not isinstance(payload, dict):
        raise TokenError("Invalid token payload.")

    now = int(time.time()) if now is None else now
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)) or exp < now:
        raise TokenError("Token expired.")

    return payload


def create_study_token(
        participant_id: str,
        access_code: str,
        side_panel_enabled: bool,
        ttl_seconds: Optional[int] = None,
        now: Optional[int] = None,
) -> str:
    """签发研究参与者的Bearer令牌"""
    issued_at = int(time.time()) if now is None else now
    ttl = settings.STUDY_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    return sign_token({
        "sub": participant_id,
        "accessCode": access_code,
        "iat": issued_at,
        "exp": issued_at + ttl,
        "sidePanelEnabled": bool(side_panel_enabled),
    })


def verify_study_token(token: str, now: Optional[int] = None) -> Dict[str, Any]:
    payload = verify_token(token, now=now)
    if not payload.get("sub") or not payload.get("accessCode"):
        raise TokenError("Invalid token payload.")
    return payload


def create_management_session_token(user_id: str, ttl_seconds: int = 8 * 60 * 60) -> str:
    """签发管理端会话Cookie的值"""
    issued_at = int(time.time())
    return sign_token({"sub": user_id, "type": "session", "iat": issued_at, "exp": issued_at + ttl_seconds})
