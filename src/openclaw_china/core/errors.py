"""
核心异常类

所有通道异常都继承 ChannelError，通过类属性 ``kind`` 区分类别，
结构化字段（status / body / limit_size / timeout_ms）随异常携带，
调用方按类型捕获，不做字符串匹配。
"""

import json

# HTTP 错误响应体在日志/异常中保留的最大长度
HTTP_ERROR_BODY_LIMIT = 300


def normalize_http_error_body(body: str | bytes | None, limit: int = HTTP_ERROR_BODY_LIMIT) -> str:
    """
    归一化上游 HTTP 错误响应体。

    JSON 响应中带 code / message (或 msg / errmsg) 时压缩为
    ``code=..., message=...``；否则截断到 ``limit`` 个字符。
    """
    if body is None:
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    trimmed = body.strip()
    if not trimmed:
        return ""

    try:
        parsed = json.loads(trimmed)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        code = parsed.get("code", parsed.get("errcode"))
        message = None
        for key in ("message", "msg", "errmsg"):
            if isinstance(parsed.get(key), str):
                message = parsed[key]
                break
        if code is not None or message:
            return f"code={code if code is not None else 'unknown'}, message={message or 'unknown'}"

    if len(trimmed) > limit:
        return f"{trimmed[:limit]}..."
    return trimmed


class ChannelError(Exception):
    """通道异常基类

    Attributes:
        kind: 异常类别（类属性，子类覆盖）
        platform: 发生异常的平台 ("qqbot" / "dingtalk" / ...)，可为空
    """

    kind = "channel"

    def __init__(self, message: str = "", platform: str = ""):
        self.platform = platform
        super().__init__(message)


class AuthError(ChannelError):
    """token 获取或使用失败

    Attributes:
        status: 平台返回的 HTTP 状态码或业务错误码
        body: 归一化后的响应体
        token_rejected: 平台明确表示 token 无效/过期（调用方可 invalidate 后重试一次）
    """

    kind = "auth"

    def __init__(
        self,
        message: str = "",
        platform: str = "",
        status: int | None = None,
        body: str = "",
        token_rejected: bool = False,
    ):
        self.status = status
        self.body = normalize_http_error_body(body)
        self.token_rejected = token_rejected
        detail = f"{message} (status={status})" if status is not None else message
        if self.body:
            detail = f"{detail} - {self.body}"
        super().__init__(detail, platform)


class SignatureError(ChannelError):
    """回调签名校验失败，拒绝处理，不尝试解密"""

    kind = "signature"


class EnvelopeIntegrityError(ChannelError):
    """解密“成功”但内容不可信：填充、长度或 receive_id 不匹配"""

    kind = "envelope_integrity"


class FileSizeLimitError(ChannelError):
    """媒体超过大小上限（在传输完成前抛出）"""

    kind = "file_size_limit"

    def __init__(self, limit_size: int, actual_size: int | None = None, source: str = ""):
        self.limit_size = limit_size
        self.actual_size = actual_size
        self.source = source
        limit_mb = limit_size / (1024 * 1024)
        super().__init__(f"Media exceeds limit ({limit_mb:.2f}MB): {source}")


class MediaTimeoutError(ChannelError):
    """媒体读取/上传/发送超时

    Attributes:
        timeout_ms: 超时预算（毫秒）
        phase: 超时发生的阶段 ("read" / "upload" / "send" / "transcode")
    """

    kind = "media_timeout"

    def __init__(self, timeout_ms: int, phase: str = "read", source: str = ""):
        self.timeout_ms = timeout_ms
        self.phase = phase
        self.source = source
        super().__init__(f"Media {phase} timed out after {timeout_ms}ms: {source}")


class UnsupportedMediaTypeError(ChannelError):
    """平台不支持该媒体类别（例如 QQ 群/C2C 不支持通用文件）"""

    kind = "unsupported_media_type"

    def __init__(self, media_class: str, platform: str = "", message: str = ""):
        self.media_class = media_class
        super().__init__(
            message or f"{platform or 'channel'} cannot carry media class '{media_class}'",
            platform,
        )


class HttpError(ChannelError):
    """上游 HTTP 调用失败，携带状态码和截断后的响应体"""

    kind = "http"

    def __init__(self, message: str = "", platform: str = "", status: int | None = None, body: str | bytes = ""):
        self.status = status
        self.body = normalize_http_error_body(body)
        detail = f"{message} (status={status})" if status is not None else message
        if self.body:
            detail = f"{detail} - {self.body}"
        super().__init__(detail, platform)


class UploadError(HttpError):
    """媒体上传阶段失败"""

    kind = "upload"


class SendError(HttpError):
    """消息发送阶段失败"""

    kind = "send"


class TranscodeError(ChannelError):
    """音频转码失败（由转码策略链内部捕获，回退为原始字节）"""

    kind = "transcode"
