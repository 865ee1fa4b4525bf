from typing import List, Protocol

from .models import ConversationSummary, Message


class ConversationStore(Protocol):
    """远端会话存储的抽象契约。

    所有方法都是协程：它们是引擎中除完成流以外仅有的挂起点。
    """

    async def list(self) -> List[ConversationSummary]:
        ...

    async def get_history(self, conversation_id: str) -> List[Message]:
        ...

    async def delete(self, conversation_id: str) -> None:
        ...

    async def rename(self, conversation_id: str, title: str) -> None:
        ...
