"""统一的消息与会话数据模型。

本模块定义了引擎内部共享的标准数据结构：

- Message: 会话中的一轮消息（user / assistant）。
- ConversationSummary: 会话列表中的一条摘要。
- StreamRequest: 发给完成流后端的一次请求。

Message 是不可变的：MessageLog 的每次修改都会生成新的 Message 对象，
因此 UI 拿到的快照不会在之后被悄悄改写。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from uuid import uuid4


# 会话角色（本引擎只处理用户与助手两类消息）
Role = Literal["user", "assistant"]

# 尚未被服务端分配身份的会话使用的哨兵 id
UNBOUND = "unbound"

PLACEHOLDER_PREFIX = "ai-placeholder-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_unbound(conversation_id: Optional[str]) -> bool:
    """None 与 UNBOUND 都表示还没有服务端身份的会话。"""

    return not conversation_id or conversation_id == UNBOUND


@dataclass(frozen=True)
class Message:
    """一条对话消息。

    - id: 会话内唯一；流式中的助手消息使用临时占位 id（见 PLACEHOLDER_PREFIX）。
    - conversation_id: 所属会话，新会话绑定之前为 UNBOUND。
    - content: 目前为止累积的完整文本。
    - created_at: 乐观插入的消息由客户端赋值，其余由服务端给出。
    - finalized: 仅当某个流式会话正在向其追加内容时为 False。
    - interrupted: 被暂停、后来又被封存的回复，供 UI 做区分显示。
    - meta: 附加元数据（如 {"error": True}），不参与不变式判断。
    """

    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = field(default_factory=utcnow)
    finalized: bool = True
    interrupted: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_placeholder(self) -> bool:
        return self.id.startswith(PLACEHOLDER_PREFIX)

    @classmethod
    def user(cls, conversation_id: str, content: str) -> "Message":
        """构造一条乐观插入的用户消息（客户端临时 id）。"""

        return cls(
            id=f"local-{uuid4().hex}",
            conversation_id=conversation_id,
            role="user",
            content=content,
        )

    @classmethod
    def placeholder(cls, conversation_id: str) -> "Message":
        """构造空的、未完成的助手占位消息。"""

        return cls(
            id=f"{PLACEHOLDER_PREFIX}{uuid4().hex}",
            conversation_id=conversation_id,
            role="assistant",
            content="",
            finalized=False,
        )


@dataclass
class ConversationSummary:
    """会话列表中的一项。"""

    id: str
    title: str
    updated_at: datetime
    message_count: int = 0
    created_at: Optional[datetime] = None


@dataclass
class StreamRequest:
    """一次流式交换的输入。

    - conversation_id: 目标会话，新会话为 UNBOUND。
    - content: 发出的用户文本。
    - edit_message_id: 编辑重生成时被编辑的用户消息 id，普通发送为 None。
    """

    conversation_id: str
    content: str
    edit_message_id: Optional[str] = None

    @property
    def is_edit(self) -> bool:
        return self.edit_message_id is not None
