"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在控制器或 UI 层做统一捕获与用户提示。

流式会话相关的错误分为两类：

- 可见错误：TransportError / ProtocolError，会在 StreamSession 边界被转换为
  一条合成的助手错误消息，不再向上传播。
- 静默信号：Cancelled / StaleUpdate，仅用于诊断日志，用户不可见。

InvariantViolation 属于编程错误，永远不会被吞掉。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TRANSPORT_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、generation 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(BusinessError):
    """网络层错误：连接失败、超时、流在 done 之前被断开等。"""


class ApiError(TransportError):
    """服务端返回非 2xx 状态码时抛出。"""


class ProtocolError(BusinessError):
    """流式事件不符合预期结构（无法解析的 JSON、未知字段组合等）。"""


class Cancelled(BusinessError):
    """用户主动取消的协作式停止，不属于失败。"""


class StaleUpdate(BusinessError):
    """来自已被取代的会话（过期 generation）或不合法目标的写入，静默丢弃。"""


class InvariantViolation(BusinessError):
    """消息日志的基础不变式被破坏，属于编程错误，必须中止当前操作。"""


class NotFound(BusinessError):
    """目标消息或会话不存在。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class StoreError(BusinessError):
    """会话存储读写失败。"""
