"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 Relay 层或 HTTP 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STREAM_TIMEOUT"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 attempt、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class ConfigurationError(ValidationError):
    """上游地址、密钥或模型未配置。调用时立即失败，不重试。"""


class NetworkError(BusinessError):
    """网络层错误，不可重试（如非法 URL、代理错误）。"""


class TransientNetworkError(NetworkError):
    """连接阶段的瞬时错误：DNS 失败、连接被拒/重置、连接超时。Relay 会退避重试。"""


class StreamInterruptedError(NetworkError):
    """数据开始流动之后的传输错误，不重试。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。"""


class UpstreamError(BusinessError):
    """上游在流内返回了 {"error": {...}} 负载。"""


class EmptyStreamError(BusinessError):
    """连接关闭时从未收到任何可用内容。"""


class StreamTimeoutError(BusinessError):
    """流式会话整体超时。"""


class SinkClosedError(BusinessError):
    """向已关闭的客户端通道写入。"""
