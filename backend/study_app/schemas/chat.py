from typing import Any, Literal, Optional
from pydantic import Field, StrictBool
from study_app.models.enums import CloseReason
from .response import CamelModel, OkResponse


class ThreadUpsertRequest(CamelModel):
    lang_graph_thread_id: str = Field(..., min_length=1)
    task_number: Optional[int] = Field(default=None, ge=1, le=3)


class ThreadUpsertResponse(OkResponse):
    created: bool
    chat_thread_db_id: int
    lang_graph_thread_id: str
    restart_index: int


class ThreadCloseRequest(CamelModel):
    lang_graph_thread_id: str = Field(..., min_length=1)
    reason: CloseReason


class ThreadCloseResponse(OkResponse):
    closed: bool


class IncomingAgentMessage(CamelModel):
    """Agent运行时推送的原始消息（字段名沿用运行时的命名）"""
    id: Optional[str] = None
    type: Literal["human", "ai", "tool"]
    content: Any = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = Field(default=None, alias="tool_call_id")


class MessageUpsertRequest(CamelModel):
    lang_graph_thread_id: str = Field(..., min_length=1)
    task_number: Optional[int] = Field(default=None, ge=1, le=3)
    message: IncomingAgentMessage


class MessageUpsertResponse(OkResponse):
    created: bool
    chat_message_id: int
    sequence: int
    already_persisted: bool = False


class SidePanelEventRequest(CamelModel):
    open: StrictBool
    lang_graph_thread_id: Optional[str] = None


class SidePanelEventResponse(OkResponse):
    ignored: bool = False
    span_id: Optional[int] = None
