"""Chat Core 顶层包。

该包提供聊天客户端的流式会话引擎：消息日志及其修改规则、
流式会话生命周期、新会话的身份绑定、编辑重生成，以及防止
会话切换打断进行中流式回复的重入保护。
"""

from chat_core.engine.controller import ConversationController

__all__ = ["ConversationController"]
