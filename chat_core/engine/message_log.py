"""当前显示会话的有序消息日志。

MessageLog 只关心消息列表本身，不知道网络或会话的存在。它维护一条基础不变式：

    至多存在一条 finalized=False 的消息；若存在，它必须是最后一条，且角色为 assistant。

每次修改都会生成新的 Message 对象并通知订阅者一次，UI 通过 snapshot()
拿到的是不可变元组，不会被之后的 patch 改写。
"""

from dataclasses import replace
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from chat_core.domain.exceptions import InvariantViolation, NotFound, StaleUpdate
from chat_core.domain.models import Message, UNBOUND

Snapshot = Tuple[Message, ...]
Listener = Callable[[Snapshot], None]


class MessageLog:
    def __init__(self, messages: Optional[Iterable[Message]] = None):
        self._messages: List[Message] = []
        self._listeners: List[Listener] = []
        if messages:
            self._messages = self._validated(messages)

    # ---- 读取 ----

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def snapshot(self) -> Snapshot:
        return tuple(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    @property
    def has_unfinalized(self) -> bool:
        last = self.last
        return last is not None and not last.finalized

    def index_of(self, message_id: str) -> int:
        for idx, msg in enumerate(self._messages):
            if msg.id == message_id:
                return idx
        raise NotFound(code="MESSAGE_NOT_FOUND", message=message_id)

    def get(self, message_id: str) -> Message:
        return self._messages[self.index_of(message_id)]

    # ---- 订阅 ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册快照监听器，返回取消订阅函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)

    # ---- 写入 ----

    def append(self, message: Message, replace_unfinalized: bool = False) -> None:
        """追加一条消息。

        若已有未完成的助手消息，只有 replace_unfinalized=True 时才允许用新消息替换它，
        否则抛出 InvariantViolation。
        """

        self._check_appendable(message)
        if self.has_unfinalized:
            if not replace_unfinalized:
                raise InvariantViolation(
                    code="UNFINALIZED_EXISTS",
                    message="an unfinalized assistant message is already streaming",
                    message_id=self._messages[-1].id,
                )
            self._messages[-1] = message
        else:
            self._messages.append(message)
        self._notify()

    def append_pair(self, user_msg: Message, placeholder: Message) -> None:
        """原子地追加"用户消息 + 助手占位"，订阅者只会看到一次更新。"""

        if user_msg.role != "user" or not user_msg.finalized:
            raise InvariantViolation(code="BAD_PAIR", message="first message must be a finalized user message")
        if placeholder.role != "assistant" or placeholder.finalized:
            raise InvariantViolation(code="BAD_PAIR", message="second message must be an unfinalized assistant message")
        if self.has_unfinalized:
            raise InvariantViolation(
                code="UNFINALIZED_EXISTS",
                message="an unfinalized assistant message is already streaming",
                message_id=self._messages[-1].id,
            )
        self._messages.extend((user_msg, placeholder))
        self._notify()

    def patch_last(self, delta_text: str) -> Message:
        """把增量文本追加到最后一条未完成的助手消息。

        目标不合法时抛出 StaleUpdate 且日志保持不变，调用方应当丢弃这次写入。
        """

        last = self.last
        if last is None or last.finalized or last.role != "assistant":
            raise StaleUpdate(code="NO_STREAMING_TARGET", message="last message is not a streaming assistant reply")
        if not delta_text:
            return last
        patched = replace(last, content=last.content + delta_text)
        self._messages[-1] = patched
        self._notify()
        return patched

    def finalize_last(self, interrupted: bool = False) -> None:
        """标记最后一条消息为已完成；重复调用无副作用。"""

        last = self.last
        if last is None or last.finalized:
            return
        self._messages[-1] = replace(last, finalized=True, interrupted=interrupted)
        self._notify()

    def discard_unfinalized(self) -> Optional[Message]:
        """移除被取代会话留下的未完成占位消息，返回被移除的消息。"""

        if not self.has_unfinalized:
            return None
        dropped = self._messages.pop()
        self._notify()
        return dropped

    def truncate_after(self, message_id: str) -> List[Message]:
        """删除 message_id 之后的所有消息（保留 message_id 本身）。

        Raises:
            NotFound: id 不存在，此时日志保持不变。
        """

        idx = self.index_of(message_id)
        removed = self._messages[idx + 1:]
        if removed:
            del self._messages[idx + 1:]
            self._notify()
        return removed

    def update_content(self, message_id: str, content: str) -> None:
        idx = self.index_of(message_id)
        self._messages[idx] = replace(self._messages[idx], content=content)
        self._notify()

    def rebind(self, conversation_id: str) -> None:
        """会话获得服务端身份后，把仍为 UNBOUND 的消息改挂到新 id 下。"""

        changed = False
        for idx, msg in enumerate(self._messages):
            if msg.conversation_id == UNBOUND:
                self._messages[idx] = replace(msg, conversation_id=conversation_id)
                changed = True
        if changed:
            self._notify()

    def replace_all(self, messages: Iterable[Message]) -> None:
        self._messages = self._validated(messages)
        self._notify()

    def clear(self) -> None:
        self._messages = []
        self._notify()

    # ---- 校验 ----

    @staticmethod
    def _check_appendable(message: Message) -> None:
        if not message.finalized and message.role != "assistant":
            raise InvariantViolation(
                code="UNFINALIZED_NON_ASSISTANT",
                message="only assistant messages may be unfinalized",
                message_id=message.id,
            )

    @staticmethod
    def _validated(messages: Iterable[Message]) -> List[Message]:
        items = list(messages)
        for idx, msg in enumerate(items):
            if msg.finalized:
                continue
            if idx != len(items) - 1 or msg.role != "assistant":
                raise InvariantViolation(
                    code="BAD_HISTORY",
                    message="unfinalized message must be the last assistant message",
                    message_id=msg.id,
                )
        return items
