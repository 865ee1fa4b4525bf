"""会话控制器：面向 UI 层的编排入口。

把 MessageLog、CancellationRegistry 与 StreamSession 串在一起，对外暴露五个意图：
send / edit_and_regenerate / pause / select_conversation / new_conversation，
另外提供删除、重命名会话等列表操作。

状态机：

    IDLE --send--> STREAMING --终态--> IDLE
    IDLE --edit_and_regenerate--> EDITING_REGENERATE --终态--> IDLE
    STREAMING --pause--> IDLE
    任意状态 --new_conversation--> IDLE

重入保护：流式进行中 select_conversation 不会清空或替换日志，
只有 pause 或新的 send 才能停止正在进行的流。
"""

import asyncio
import logging
from typing import Any, Coroutine, List, Literal, Optional, Set

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import ConversationSummary, Message, StreamRequest, UNBOUND, is_unbound
from chat_core.engine.cancellation import CancellationHandle, CancellationRegistry
from chat_core.engine.conversation_list import ConversationListCache
from chat_core.engine.message_log import MessageLog
from chat_core.engine.stream_session import SessionState, StreamSession
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import CompletionStreamOpener


ControllerState = Literal["idle", "streaming", "editing_regenerate"]

IDLE: ControllerState = "idle"
STREAMING: ControllerState = "streaming"
EDITING_REGENERATE: ControllerState = "editing_regenerate"


class ConversationController:
    def __init__(
        self,
        store: ConversationStore,
        opener: CompletionStreamOpener,
        log: Optional[MessageLog] = None,
        registry: Optional[CancellationRegistry] = None,
        list_cache: Optional[ConversationListCache] = None,
        error_prefix: Optional[str] = None,
    ):
        self._store = store
        self._opener = opener
        self.log = log if log is not None else MessageLog()
        self._registry = registry if registry is not None else CancellationRegistry()
        self.conversations = list_cache if list_cache is not None else ConversationListCache(store)
        self._error_prefix = settings.error_prefix if error_prefix is None else error_prefix
        self._state: ControllerState = IDLE
        self._conversation_id: str = UNBOUND
        self._session: Optional[StreamSession] = None
        self._background: Set[asyncio.Task] = set()

    # ---- 只读状态 ----

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def is_streaming(self) -> bool:
        return self._state != IDLE

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def display_title(self) -> str:
        """侧边栏标题 → 已绑定会话显示 "Chat" → 新会话显示 "New Chat"。"""

        summary = self.conversations.get(self._conversation_id)
        if summary is not None and summary.title:
            return summary.title
        return "New Chat" if is_unbound(self._conversation_id) else "Chat"

    # ---- 意图 ----

    async def send(self, text: str) -> Optional[SessionState]:
        """发送一条用户消息并驱动流式回复，返回会话终态；空白输入直接忽略。"""

        if not text.strip():
            return None
        superseding = self._session is not None and not self._session.terminal
        handle = CancellationHandle()
        self._registry.supersede(handle)
        if superseding:
            # 被取代的回复不能留下任何片段
            self.log.discard_unfinalized()
        elif self.log.has_unfinalized:
            # pause 留下的回复在下一次意图前封存
            self.log.finalize_last(interrupted=True)

        conversation_id = self._conversation_id
        self.log.append_pair(Message.user(conversation_id, text), Message.placeholder(conversation_id))
        self._transition(STREAMING)
        return await self._run(StreamRequest(conversation_id=conversation_id, content=text), handle)

    async def edit_and_regenerate(self, message_id: str, new_text: str) -> SessionState:
        """改写一条用户消息，丢弃其后的全部历史并重新生成回复。

        Raises:
            NotFound: message_id 不在日志中，日志保持不变。
            ValidationError: 目标不是用户消息或新内容为空。
        """

        target = self.log.get(message_id)
        if target.role != "user":
            raise ValidationError(code="NOT_USER_MESSAGE", message="only user messages can be edited")
        if not new_text.strip():
            raise ValidationError(code="EMPTY_CONTENT", message="edited message cannot be empty")

        handle = CancellationHandle()
        self._registry.supersede(handle)
        self.log.update_content(message_id, new_text)
        self.log.truncate_after(message_id)
        conversation_id = self._conversation_id
        self.log.append(Message.placeholder(conversation_id))
        self._transition(EDITING_REGENERATE)
        request = StreamRequest(conversation_id=conversation_id, content=new_text, edit_message_id=message_id)
        return await self._run(request, handle)

    def pause(self) -> None:
        """停止当前流；已经流入的文本保留，但不会被标记为完成。"""

        self._registry.cancel_current()
        self._session = None
        self._transition(IDLE)

    async def select_conversation(self, conversation_id: Optional[str]) -> bool:
        """切换到另一个会话并加载历史，返回日志是否被替换。"""

        if self.is_streaming:
            logger.info(
                "Ignored conversation switch while streaming",
                extra={"extra": {"requested": conversation_id, "current": self._conversation_id}},
            )
            return False

        generation = self._registry.bump()
        if is_unbound(conversation_id):
            self._conversation_id = UNBOUND
            self.log.clear()
            return True

        # 日志替换之前，当前会话仍是屏幕上显示的那一个
        try:
            history = await self._store.get_history(conversation_id)
        except BusinessError as e:
            logger.error(
                f"Failed to load messages: {e}",
                extra={"extra": {"conversation_id": conversation_id, "code": e.code}},
            )
            return False
        if not self._registry.is_current(generation):
            logger.debug(
                "Dropped stale history load",
                extra={"extra": {"conversation_id": conversation_id, "generation": generation}},
            )
            return False
        self.log.replace_all(history)
        self._conversation_id = conversation_id
        return True

    def new_conversation(self) -> None:
        self._registry.cancel_current()
        self._registry.bump()
        self._session = None
        self._conversation_id = UNBOUND
        self.log.clear()
        self._transition(IDLE)

    # ---- 会话列表 ----

    async def refresh_conversations(self) -> List[ConversationSummary]:
        return await self.conversations.refresh()

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._store.delete(conversation_id)
        self.conversations.remove(conversation_id)
        if conversation_id == self._conversation_id:
            self.new_conversation()

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        title = title.strip()
        if not title:
            raise ValidationError(code="EMPTY_TITLE", message="title cannot be empty")
        await self._store.rename(conversation_id, title)
        self.conversations.rename(conversation_id, title)

    async def drain_background(self) -> None:
        """等待所有后台任务（列表刷新）结束。"""

        while self._background:
            await asyncio.gather(*list(self._background))

    # ---- 内部 ----

    async def _run(self, request: StreamRequest, handle: CancellationHandle) -> SessionState:
        session = StreamSession(
            request=request,
            handle=handle,
            log=self.log,
            opener=self._opener,
            is_current=self._registry.is_current,
            on_bound=self._on_bound,
            error_prefix=self._error_prefix,
        )
        self._session = session
        try:
            return await session.run()
        finally:
            if self._registry.is_current(session.generation):
                self._registry.release(handle)
                self._session = None
                self._transition(IDLE)

    def _on_bound(self, conversation_id: str) -> None:
        if not is_unbound(self._conversation_id):
            return
        self._conversation_id = conversation_id
        self.log.rebind(conversation_id)
        self._spawn(self._refresh_after_bind(conversation_id))

    async def _refresh_after_bind(self, conversation_id: str) -> None:
        try:
            await self.conversations.refresh()
        except BusinessError as e:
            logger.warning(
                f"Conversation list refresh failed: {e}",
                extra={"extra": {"conversation_id": conversation_id, "code": e.code}},
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _transition(self, state: ControllerState) -> None:
        if state == self._state:
            return
        logger.log(
            logging.DEBUG,
            "Controller state change",
            extra={"extra": {"from": self._state, "to": state, "conversation_id": self._conversation_id}},
        )
        self._state = state
