"""完成流事件的封闭变体。

后端推送的负载是动态的 JSON，本模块在 StreamSession 边界把它们一次性解析成
四种类型之一，引擎其余部分不再检查原始 dict：

- Increment: 一段增量文本。
- BoundIdentity: 服务端为新会话分配的身份。
- Done: 流自然结束。
- StreamFailure: 服务端在流中报告的错误。

支持两种负载写法：

1. 带标签的写法：{"type": "increment", "text": "..."}、
   {"type": "bound_identity", "conversation_id": "..."}、{"type": "done"}、
   {"type": "error", "message": "..."}。
2. 聊天后端的简写：{"content": "...", "chat_id": "..."}（一条负载可能同时
   携带身份与文本，身份在前）、{"error": "..."}、{"done": true}。
"""

from dataclasses import dataclass
from typing import Any, List, Union

from chat_core.domain.exceptions import ProtocolError


@dataclass(frozen=True)
class Increment:
    text: str


@dataclass(frozen=True)
class BoundIdentity:
    conversation_id: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class StreamFailure:
    message: str


StreamEvent = Union[Increment, BoundIdentity, Done, StreamFailure]

EVENT_TYPES = (Increment, BoundIdentity, Done, StreamFailure)


def _require_str(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ProtocolError(
            code="BAD_EVENT",
            message=f"field {key!r} must be a string",
            payload=payload,
        )
    return value


def parse_event(payload: Any) -> List[StreamEvent]:
    """把一条原始负载解析为有序的事件列表。

    Raises:
        ProtocolError: 负载不是 dict，或字段组合无法识别。
    """

    if not isinstance(payload, dict):
        raise ProtocolError(code="BAD_EVENT", message=f"unexpected event payload: {payload!r}")

    kind = payload.get("type")
    if kind is not None:
        if kind == "increment":
            return [Increment(_require_str(payload, "text"))]
        if kind == "bound_identity":
            return [BoundIdentity(_require_str(payload, "conversation_id"))]
        if kind == "done":
            return [Done()]
        if kind == "error":
            return [StreamFailure(_require_str(payload, "message"))]
        raise ProtocolError(code="BAD_EVENT", message=f"unknown event type {kind!r}", payload=payload)

    if "error" in payload:
        return [StreamFailure(str(payload["error"]))]
    if payload.get("done") is True:
        return [Done()]

    events: List[StreamEvent] = []
    if payload.get("chat_id") is not None:
        events.append(BoundIdentity(str(payload["chat_id"])))
    if "content" in payload:
        events.append(Increment(_require_str(payload, "content")))
    if not events:
        raise ProtocolError(code="BAD_EVENT", message="event carries no known fields", payload=payload)
    return events


def coerce_events(raw: Any) -> List[StreamEvent]:
    """接受已类型化的事件或原始 dict，统一返回事件列表。"""

    if isinstance(raw, EVENT_TYPES):
        return [raw]
    return parse_event(raw)
