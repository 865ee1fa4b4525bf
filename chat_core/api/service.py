"""对外 API 服务模块。

为 UI 层提供默认装配好的控制器，以及按配置选择会话存储的工厂函数。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.engine.controller import ConversationController
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.http_store import HttpConversationStore
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.providers import create_opener


_controller: Optional[ConversationController] = None


def create_store(backend: Optional[str] = None) -> ConversationStore:
    """根据配置创建会话存储：http 为远端服务，json 为本地文件。"""

    name = (backend or settings.store_backend).lower()
    if name == "json":
        return JsonConversationStore(root=settings.storage_root)
    if name == "http":
        return HttpConversationStore(settings)
    raise KeyError(f"Unknown store backend: {name!r}")


def get_default_controller() -> ConversationController:
    """获取默认的会话控制器实例（单例）。"""
    global _controller
    if _controller is None:
        _controller = ConversationController(store=create_store(), opener=create_opener())
        logger.info(
            "Created default controller",
            extra={"extra": {"store_backend": settings.store_backend, "api_base_url": settings.api_base_url}},
        )
    return _controller


def reset_default_controller() -> None:
    """丢弃单例（注销或切换账号后调用），进行中的流会被取消。"""
    global _controller
    if _controller is not None:
        _controller.new_conversation()
    _controller = None
