"""
媒体通道基类

定义 MediaTransfer 依赖的平台原语: 上传媒体、发送媒体消息、发送文本。
各平台只负责请求/响应字段映射，token 由 TokenCache 提供，
平台拒绝 token 时 invalidate 后重试一次。
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import httpx

from ...core.errors import AuthError, HttpError, UnsupportedMediaTypeError
from ..media.types import MediaAsset, MediaClass
from ..token_cache import AccountCredential, TokenCache, call_with_token_retry, get_default_token_cache
from ..types import DeliveryTarget, SendResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HTTP_TIMEOUT = 30.0


class MediaChannel(ABC):
    """
    单个平台账号的媒体发送通道

    类属性:
        platform: 平台名（与 TokenCache 的 fetcher 键一致）
        supported_classes: 可承载的媒体类别
        supports_url_upload: 是否支持直接用公网 URL 上传（无需本地读取）
        voice_codec: 语音消息要求的私有编码（如 "silk"），None 表示无要求
    """

    platform: str = ""
    supported_classes: frozenset[MediaClass] = frozenset(MediaClass)
    supports_url_upload: bool = False
    voice_codec: str | None = None

    def __init__(
        self,
        credential: AccountCredential,
        token_cache: TokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.credential = credential
        self.token_cache = token_cache or get_default_token_cache()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def check_supported(self, media_class: MediaClass) -> None:
        if media_class not in self.supported_classes:
            raise UnsupportedMediaTypeError(media_class.value, self.platform)

    async def _with_token(self, call: Callable[[str], Awaitable[T]]) -> T:
        return await call_with_token_retry(self.token_cache, self.credential, call)

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        error_cls: type[HttpError],
        what: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """发送请求并解析 JSON；401 视为 token 被拒绝，其余 4xx/5xx 抛 error_cls"""
        resp = await self._client().request(method, url, **kwargs)
        if resp.status_code == 401:
            raise AuthError(
                f"{what}: token rejected", self.platform,
                status=resp.status_code, body=resp.text, token_rejected=True,
            )
        if resp.status_code >= 400:
            raise error_cls(what, self.platform, status=resp.status_code, body=resp.text)
        try:
            data = resp.json()
        except ValueError:
            raise error_cls(f"{what}: non-JSON response", self.platform, status=resp.status_code, body=resp.text)
        if not isinstance(data, dict):
            raise error_cls(f"{what}: unexpected response", self.platform, status=resp.status_code, body=resp.text)
        return data

    def _check_errcode(
        self,
        data: dict[str, Any],
        *,
        error_cls: type[HttpError],
        what: str,
        rejected_codes: Iterable[int] = (),
        code_key: str = "errcode",
    ) -> None:
        """钉钉/企业微信风格的业务错误码检查"""
        code = data.get(code_key, 0)
        if not code:
            return
        body = str(data.get("errmsg", data))
        if code in rejected_codes:
            raise AuthError(f"{what}: token rejected", self.platform, status=code, body=body, token_rejected=True)
        raise error_cls(what, self.platform, status=code, body=body)

    @abstractmethod
    async def upload(
        self,
        target: DeliveryTarget,
        media_class: MediaClass,
        *,
        url: str | None = None,
        asset: MediaAsset | None = None,
    ) -> str:
        """上传媒体，返回平台资源句柄（file_info / media_id）"""

    @abstractmethod
    async def send_media(
        self,
        target: DeliveryTarget,
        handle: str,
        media_class: MediaClass,
        *,
        file_name: str = "",
    ) -> SendResult:
        """发送引用已上传资源的媒体消息"""

    @abstractmethod
    async def send_text(self, target: DeliveryTarget, text: str) -> SendResult:
        """发送纯文本消息"""
