"""聊天后端的 HTTP 完成流适配器。

本模块负责：

1. 接收统一的 StreamRequest。
2. 将其转换为聊天后端的 HTTP 请求（普通发送与编辑重生成使用不同端点）。
3. 以流式方式读取 `data:` 行，处理网络/API 异常。
4. 把每行 JSON 解析为类型化事件（见 chat_core.domain.events）。

端点：
- 发送: POST {base_url}/chat/stream，body {"message": ..., "chat_id": ...}
- 编辑: POST {base_url}/chat/messages/{message_id}/edit，body {"content": ...}

句柄被触发时会关闭底层响应，之后的读取以 Cancelled 结束，不再产出任何事件。
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Set

import httpx

from chat_core.domain.events import Done, StreamEvent, parse_event
from chat_core.domain.exceptions import ApiError, ProtocolError, TransportError, ValidationError
from chat_core.domain.models import StreamRequest, is_unbound
from chat_core.engine.cancellation import CancellationHandle
from chat_core.infrastructure.logging.logger import logger

# data: 之外的 SSE 字段，只携带元信息
_SSE_FIELDS = ("event:", "id:", "retry:")


class HttpCompletionStream:
    """基于 httpx.AsyncClient 的完成流客户端。"""

    name = "http"

    def __init__(self, settings):
        # Settings 里包含 api_base_url、api_token、超时等配置
        self._settings = settings

    def open(self, request: StreamRequest, handle: CancellationHandle) -> AsyncIterator[StreamEvent]:
        if not request.content.strip():
            raise ValidationError(code="EMPTY_CONTENT", message="cannot stream an empty message")
        return self._events(request, handle)

    async def _events(self, request: StreamRequest, handle: CancellationHandle) -> AsyncIterator[StreamEvent]:
        url, payload = self._build_request(request)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ApiError(code="API_ERROR", message=body or resp.reason_phrase, http_status=resp.status_code)
                    handle.add_callback(_closer(resp))
                    async for line in resp.aiter_lines():
                        handle.raise_if_cancelled()
                        data_str = self._strip_line(line)
                        if data_str is None:
                            continue
                        if data_str == "[DONE]":
                            yield Done()
                            return
                        try:
                            raw = json.loads(data_str)
                        except json.JSONDecodeError as e:
                            raise ProtocolError(code="BAD_JSON", message=f"malformed event: {e}")
                        for event in parse_event(raw):
                            handle.raise_if_cancelled()
                            yield event
                            if isinstance(event, Done):
                                return
        except httpx.StreamError:
            handle.raise_if_cancelled()
            raise TransportError(code="STREAM_CLOSED", message="stream closed unexpectedly")
        except httpx.RequestError as e:
            handle.raise_if_cancelled()
            # 网络错误：DNS 失败、连接超时、读取时断开等
            raise TransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        handle.raise_if_cancelled()
        raise TransportError(code="STREAM_TRUNCATED", message="stream closed before completion")

    def _build_request(self, request: StreamRequest) -> tuple[str, Dict[str, Any]]:
        base = self._settings.api_base_url
        if request.is_edit:
            return (
                f"{base}/chat/messages/{request.edit_message_id}/edit",
                {"content": request.content},
            )
        chat_id = None if is_unbound(request.conversation_id) else request.conversation_id
        return f"{base}/chat/stream", {"message": request.content, "chat_id": chat_id}

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream", "Content-Type": "application/json"}
        token = getattr(self._settings, "api_token", None)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @staticmethod
    def _strip_line(line: str) -> Optional[str]:
        """去掉 SSE 的 `data:` 前缀；空行、注释行与其他 SSE 字段行返回 None。

        没有任何字段前缀的行按裸 JSON 事件处理。
        """

        if not line or line.startswith(":"):
            return None
        if line.startswith("data:"):
            data_str = line[5:]
        elif line.startswith(_SSE_FIELDS):
            return None
        else:
            data_str = line
        data_str = data_str.strip()
        return data_str or None


# 已调度但尚未完成的关闭任务，持有引用以免被回收
_pending_closes: Set[asyncio.Task] = set()


def _closer(resp: httpx.Response):
    """返回一个在取消时关闭响应的回调。

    取消发生在事件循环内、响应仍在读取时，因此这里只调度关闭而不等待。
    """

    def close() -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(resp.aclose())
        _pending_closes.add(task)
        task.add_done_callback(_close_done)

    return close


def _close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Failed to close completion stream", exc_info=exc)
