"""完成流后端的抽象接口。

引擎不直接依赖具体的 HTTP 细节，而是依赖此协议：

- open(request, handle) 返回一个异步迭代器，逐条产出事件。
- 事件可以是 chat_core.domain.events 中的类型化事件，也可以是原始 dict，
  StreamSession 会在边界处统一解析。
- 句柄被触发后，实现者不得再产出任何事件，可以抛出 Cancelled
  （CancellationHandle.raise_if_cancelled）结束迭代。
"""

from typing import Any, AsyncIterator, Protocol

from chat_core.domain.models import StreamRequest
from chat_core.engine.cancellation import CancellationHandle


class CompletionStreamOpener(Protocol):
    """完成流客户端协议。"""

    name: str

    def open(self, request: StreamRequest, handle: CancellationHandle) -> AsyncIterator[Any]:
        ...
