"""单次流式交换的驱动器。

StreamSession 把一次 send / edit 意图转换为一串 MessageLog 修改，并且只报告
一个终态：

- completed: 流自然结束，最后一条助手消息被标记为完成。
- cancelled: 句柄被触发或 generation 已过期，之后不再写日志。
- failed: 传输/协议/服务端错误，追加一条已完成的合成错误消息。

会话由 ConversationController 独占，不在意图之间共享。
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.events import BoundIdentity, Done, Increment, StreamFailure, coerce_events
from chat_core.domain.exceptions import (
    Cancelled,
    InvariantViolation,
    ProtocolError,
    StaleUpdate,
    TransportError,
)
from chat_core.domain.models import Message, StreamRequest, is_unbound
from chat_core.engine.cancellation import CancellationHandle
from chat_core.engine.message_log import MessageLog
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import CompletionStreamOpener


SessionState = Literal["running", "completed", "cancelled", "failed"]

RUNNING: SessionState = "running"
COMPLETED: SessionState = "completed"
CANCELLED: SessionState = "cancelled"
FAILED: SessionState = "failed"


class StreamSession:
    def __init__(
        self,
        request: StreamRequest,
        handle: CancellationHandle,
        log: MessageLog,
        opener: CompletionStreamOpener,
        is_current: Callable[[int], bool],
        on_bound: Optional[Callable[[str], None]] = None,
        error_prefix: Optional[str] = None,
    ):
        self.request = request
        self.handle = handle
        self.generation = handle.generation
        self.state: SessionState = RUNNING
        self.bound_id: Optional[str] = None
        self.error: Optional[str] = None
        self._log_target = log
        self._opener = opener
        self._is_current = is_current
        self._on_bound = on_bound
        self._error_prefix = settings.error_prefix if error_prefix is None else error_prefix
        self._buffer: List[str] = []
        self._log_ctx: Dict[str, Any] = {
            "session_id": f"ss-{uuid4().hex[:12]}",
            "generation": self.generation,
            "conversation_id": request.conversation_id,
            "edit": request.is_edit,
        }

    @property
    def text(self) -> str:
        """本会话累积的全部增量文本。"""

        return "".join(self._buffer)

    @property
    def terminal(self) -> bool:
        return self.state != RUNNING

    @property
    def conversation_id(self) -> str:
        return self.bound_id or self.request.conversation_id

    async def run(self) -> SessionState:
        """驱动整个流，返回终态。

        TransportError / ProtocolError 在这里被转换为合成错误消息，不再向上传播；
        InvariantViolation 标记失败后原样抛出。
        """

        if self.terminal:
            return self.state
        self._log(logging.INFO, "Opening completion stream")
        stream = self._opener.open(self.request, self.handle)
        try:
            finished = await self._consume(stream)
            if not self.terminal:
                if finished or not self._should_stop():
                    self._complete()
        except Cancelled:
            self._terminate(CANCELLED)
        except (TransportError, ProtocolError) as exc:
            self._fail(exc.message, code=exc.code)
        except InvariantViolation as exc:
            self._terminate(FAILED)
            self.error = exc.message
            self._log(logging.ERROR, "Message log invariant violated", code=exc.code)
            raise
        except asyncio.CancelledError:
            self._terminate(CANCELLED)
            raise
        finally:
            await self._close(stream)
        return self.state

    async def _consume(self, stream: AsyncIterator[Any]) -> bool:
        """逐条处理事件；收到 Done 返回 True，流被截断或停止时返回 False。"""

        async for raw in stream:
            if self._should_stop():
                return False
            for event in coerce_events(raw):
                if self._should_stop():
                    return False
                if isinstance(event, Increment):
                    self._write(event.text)
                elif isinstance(event, BoundIdentity):
                    self._bind(event.conversation_id)
                elif isinstance(event, StreamFailure):
                    self._fail(event.message, code="SERVER_ERROR")
                    return False
                elif isinstance(event, Done):
                    return True
        return False

    def _should_stop(self) -> bool:
        if self.terminal:
            return True
        if self.handle.cancelled:
            self._terminate(CANCELLED)
            return True
        if not self._is_current(self.generation):
            self._log(logging.DEBUG, "Dropping writes from stale generation")
            self._terminate(CANCELLED)
            return True
        return False

    def _write(self, text: str) -> None:
        self._buffer.append(text)
        try:
            self._log_target.patch_last(text)
        except StaleUpdate as exc:
            self._log(logging.DEBUG, "Discarded increment", code=exc.code)

    def _bind(self, conversation_id: str) -> None:
        if self.bound_id is not None or not is_unbound(self.request.conversation_id):
            return
        self.bound_id = conversation_id
        self._log_ctx["conversation_id"] = conversation_id
        self._log(logging.INFO, "Conversation bound by server")
        if self._on_bound is not None:
            self._on_bound(conversation_id)

    def _complete(self) -> None:
        self._log_target.finalize_last()
        self._terminate(COMPLETED)
        self._log(logging.INFO, "Completion stream finished", chars=len(self.text))

    def _fail(self, message: str, code: str) -> None:
        if self.terminal:
            return
        if self.handle.cancelled or not self._is_current(self.generation):
            self._terminate(CANCELLED)
            return
        self.error = message
        self._log_target.finalize_last()
        self._log_target.append(
            Message(
                id=f"err-{uuid4().hex}",
                conversation_id=self.conversation_id,
                role="assistant",
                content=f"{self._error_prefix}{message}",
                meta={"error": True, "code": code},
            )
        )
        self._terminate(FAILED)
        self._log(logging.WARNING, "Completion stream failed", code=code, error=message)

    def _terminate(self, state: SessionState) -> None:
        if self.terminal:
            return
        self.state = state
        if state == CANCELLED:
            self._log(logging.INFO, "Completion stream cancelled", chars=len(self.text))

    @staticmethod
    async def _close(stream: Any) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload = dict(self._log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
