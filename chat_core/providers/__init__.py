"""完成流后端集成层。

该包下的模块负责：
- 定义完成流抽象接口 (base)。
- 提供具体实现 (如 http_stream)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import CompletionStreamOpener
from chat_core.providers.http_stream import HttpCompletionStream


def create_opener(name: Optional[str] = None) -> CompletionStreamOpener:
    """根据名称创建完成流客户端，目前只有 http 一种实现。"""

    opener_name = (name or "http").lower()
    if opener_name != "http":
        raise KeyError(f"Unknown completion backend: {opener_name!r}")
    return HttpCompletionStream(settings)

