"""
Agent消息的统一表示。

外部传入的消息可能使用 role（user/assistant/tool）或 type（human/ai/tool）区分，
工具调用也可能是 OpenAI 的 function 结构或扁平的 {name, args} 结构。
所有消息在进入Agent逻辑之前先规范化为带标签的联合类型。
"""
import json
import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def _new_id() -> str:
    return uuid.uuid4().hex


class ToolCall(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    # 参数不是合法JSON对象时为None
    args: Optional[Dict[str, Any]] = None


class UserMessage(BaseModel):
    type: Literal["human"] = "human"
    id: str = Field(default_factory=_new_id)
    content: str


class AssistantMessage(BaseModel):
    type: Literal["ai"] = "ai"
    id: str = Field(default_factory=_new_id)
    content: str = ""
    tool_calls: List[ToolCall] = []


class ToolMessage(BaseModel):
    type: Literal["tool"] = "tool"
    id: str = Field(default_factory=_new_id)
    content: str
    tool_call_id: str
    name: Optional[str] = None


AgentMessage = Annotated[Union[UserMessage, AssistantMessage, ToolMessage], Field(discriminator="type")]

_message_adapter = TypeAdapter(AgentMessage)

_KIND_ALIASES = {
    "human": "human",
    "user": "human",
    "ai": "ai",
    "assistant": "ai",
    "tool": "tool",
}


def content_to_visible_string(content: Any) -> str:
    """将任意消息内容转换为可展示的字符串"""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            str(part.get("text", ""))
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        texts = [text for text in texts if text.strip()]
        if texts:
            return " ".join(texts)
        return "Multimodal message"
    try:
        return json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(content)


def to_json_value(value: Any) -> Any:
    """将任意值转换为可写入JSON列的值"""
    if value is None:
        return None
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError):
        return str(value)


def _parse_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _normalize_tool_call(raw: Any) -> ToolCall:
    if isinstance(raw, ToolCall):
        return raw
    if not isinstance(raw, dict):
        raise ValueError(f"Unsupported tool call: {raw!r}")
    function = raw.get("function")
    if isinstance(function, dict):
        name = function.get("name")
        args = _parse_arguments(function.get("arguments"))
    else:
        name = raw.get("name")
        args = _parse_arguments(raw.get("args", raw.get("arguments")))
    data = {"name": str(name or ""), "args": args}
    if raw.get("id"):
        data["id"] = str(raw["id"])
    return ToolCall(**data)


def normalize_message(raw: Any) -> Union[UserMessage, AssistantMessage, ToolMessage]:
    """
    将外部消息规范化为 UserMessage / AssistantMessage / ToolMessage

    Args:
        raw: 已规范化的消息对象，或带 role/type 字段的字典

    Returns:
        规范化后的消息

    Raises:
        ValueError: 无法识别的消息
    """
    if isinstance(raw, (UserMessage, AssistantMessage, ToolMessage)):
        return raw
    if not isinstance(raw, dict):
        raise ValueError(f"Unsupported message: {raw!r}")

    kind = raw.get("type") or raw.get("role")
    tag = _KIND_ALIASES.get(str(kind or "").lower())
    if tag is None:
        raise ValueError(f"Unsupported message kind: {kind!r}")

    data: Dict[str, Any] = {"type": tag, "content": content_to_visible_string(raw.get("content"))}
    if raw.get("id"):
        data["id"] = str(raw["id"])
    if tag == "ai":
        data["tool_calls"] = [_normalize_tool_call(call) for call in raw.get("tool_calls") or []]
    elif tag == "tool":
        data["tool_call_id"] = str(raw.get("tool_call_id") or "")
        if raw.get("name"):
            data["name"] = str(raw["name"])
    return _message_adapter.validate_python(data)


def normalize_messages(raw_messages: List[Any]) -> List[Union[UserMessage, AssistantMessage, ToolMessage]]:
    return [normalize_message(raw) for raw in raw_messages]


def to_openai_message(message: Union[UserMessage, AssistantMessage, ToolMessage]) -> Dict[str, Any]:
    """转换为 OpenAI Chat Completions 的消息格式"""
    if isinstance(message, UserMessage):
        return {"role": "user", "content": message.content}
    if isinstance(message, ToolMessage):
        return {"role": "tool", "content": message.content, "tool_call_id": message.tool_call_id}

    payload: Dict[str, Any] = {"role": "assistant", "content": message.content or None}
    if message.tool_calls:
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.args or {})},
            }
            for call in message.tool_calls
        ]
    elif payload["content"] is None:
        payload["content"] = ""
    return payload
