from typing import Any, Dict, Optional
from pydantic import Field
from .response import CamelModel, OkResponse


class SessionStartRequest(CamelModel):
    access_code: str = Field(..., min_length=1)
    client_meta: Optional[Dict[str, Any]] = None


class SessionStartResponse(OkResponse):
    token: str
    access_code: str
    redirect_to: str
    side_panel_enabled: bool


class HeartbeatResponse(OkResponse):
    last_active_at: Optional[str] = None
