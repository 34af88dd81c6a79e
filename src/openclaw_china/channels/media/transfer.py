"""
媒体投递

MediaTransfer 把一个媒体引用（URL / 本地路径）投递到平台:
分类 → (URL 直传 | 限额读取 → 语音转码) → 上传 → 发送媒体消息

deliver_with_fallback 依次尝试媒体队列，全部失败时发送一条文本兜底，
内容为 text_fallback 加上各媒体引用（每行一个），保证用户至少收到链接。
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

import httpx

from ...core.errors import (
    AuthError,
    ChannelError,
    FileSizeLimitError,
    HttpError,
    MediaTimeoutError,
    SendError,
    UnsupportedMediaTypeError,
    UploadError,
)
from ..types import DeliveryTarget, SendResult
from .audio_utils import SilkTranscoder
from .reader import read_media
from .types import (
    MediaAsset,
    MediaClass,
    classify_reference,
    is_http_url,
    reference_name,
    sniff_media_class,
    strip_title_from_url,
)

if TYPE_CHECKING:
    from ..adapters.base import MediaChannel

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE_MB = 100
DEFAULT_MEDIA_TIMEOUT_MS = 30000

Transcoder = Callable[[bytes, str], Awaitable[bytes]]


@dataclass
class DeliveryReport:
    """deliver_with_fallback 的结果

    Attributes:
        result: 最终发送成功的消息（媒体或文本兜底），什么都没发时为 None
        media_delivered: 是否有媒体投递成功
        delivered_ref: 投递成功的媒体引用
        failures: 失败的 (引用, 异常) 列表，按尝试顺序
    """

    result: SendResult | None
    media_delivered: bool
    delivered_ref: str | None = None
    failures: list[tuple[str, ChannelError]] = field(default_factory=list)


def failure_phase(error: ChannelError) -> str:
    if isinstance(error, MediaTimeoutError):
        return error.phase
    if isinstance(error, SendError):
        return "send"
    if isinstance(error, AuthError):
        return "auth"
    return "upload"


def compose_fallback_text(text_fallback: str | None, refs: Sequence[str]) -> str:
    """text_fallback 后逐行附上未出现在正文中的媒体引用"""
    text = (text_fallback or "").strip()
    lines = [text] if text else []
    lines.extend(ref for ref in refs if ref not in text)
    return "\n".join(lines)


class MediaTransfer:
    """
    单个媒体通道上的投递器

    Args:
        channel: 平台媒体通道
        max_file_size_mb: 单个媒体大小上限
        media_timeout_ms: 读取 / 上传 / 发送各阶段的超时
        transcoder: 语音转码策略；通道要求 silk 且未指定时使用 SilkTranscoder
        http_client: 下载远程媒体用的 httpx 客户端（不传则每次新建）
    """

    def __init__(
        self,
        channel: MediaChannel,
        *,
        max_file_size_mb: float = DEFAULT_MAX_FILE_SIZE_MB,
        media_timeout_ms: int = DEFAULT_MEDIA_TIMEOUT_MS,
        transcoder: Transcoder | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.channel = channel
        self.max_size = int(max_file_size_mb * 1024 * 1024)
        self.media_timeout_ms = media_timeout_ms
        if transcoder is None and channel.voice_codec == "silk":
            transcoder = SilkTranscoder()
        self.transcoder = transcoder
        self._http_client = http_client

    @classmethod
    def from_settings(cls, channel: MediaChannel, settings: Any = None, **kwargs: Any) -> MediaTransfer:
        if settings is None:
            from ...config import settings
        transcoder = kwargs.pop("transcoder", None)
        if transcoder is None and channel.voice_codec == "silk":
            transcoder = SilkTranscoder(ffmpeg_path=settings.ffmpeg_path)
        return cls(
            channel,
            max_file_size_mb=settings.max_file_size_mb,
            media_timeout_ms=settings.media_timeout_ms,
            transcoder=transcoder,
            **kwargs,
        )

    @property
    def platform(self) -> str:
        return self.channel.platform

    async def deliver(
        self,
        target: DeliveryTarget,
        media_ref: str,
        kind: MediaClass | str | None = None,
    ) -> SendResult:
        """
        投递单个媒体

        Raises:
            UnsupportedMediaTypeError: 通道不支持该类别（不做任何 I/O）
            FileSizeLimitError: 超过大小上限
            MediaTimeoutError: 读取 / 上传 / 发送超时
            UploadError / SendError: 对应阶段失败
            AuthError: token 获取失败或重试后仍被拒绝
        """
        source = strip_title_from_url(media_ref)
        media_class = _coerce_media_class(kind, self.platform) if kind else classify_reference(source)
        if media_class is not None:
            self.channel.check_supported(media_class)

        url_upload = (
            media_class is not None
            and is_http_url(source)
            and self.channel.supports_url_upload
            # 需要私有语音编码时先下载转码
            and not (media_class is MediaClass.AUDIO and self.transcoder is not None)
        )

        if url_upload:
            file_name = reference_name(source)
            handle = await self._upload(target, media_class, source, url=source)
        else:
            asset = await self._fetch(source, media_class)
            if asset.media_class is MediaClass.AUDIO and self.transcoder is not None:
                asset = await self._prepare_voice(asset)
            media_class = asset.media_class
            file_name = asset.file_name
            handle = await self._upload(target, media_class, source, asset=asset)

        result = await self._send_media(target, handle, media_class, source, file_name)
        logger.info(
            f"[MediaTransfer] {self.platform} {media_class.value} delivered to {target}: {source}"
        )
        return result

    async def deliver_with_fallback(
        self,
        target: DeliveryTarget,
        media_queue: Sequence[str],
        text_fallback: str | None = None,
    ) -> DeliveryReport:
        """
        依次尝试媒体队列，第一个成功即返回；全部失败时发送一条文本兜底

        兜底文本发送失败时抛出 SendError / AuthError / MediaTimeoutError。
        """
        refs = [ref.strip() for ref in media_queue if ref and ref.strip()]
        attempts = [(ref, functools.partial(self.deliver, target, ref)) for ref in refs]
        failures: list[tuple[str, ChannelError]] = []

        for ref, attempt in attempts:
            try:
                result = await attempt()
            except ChannelError as e:
                logger.error(
                    f"[MediaTransfer] {self.platform} sendMedia failed "
                    f"({failure_phase(e)} phase) target={target} source={ref}: {e}"
                )
                failures.append((ref, e))
                continue
            return DeliveryReport(result=result, media_delivered=True, delivered_ref=ref, failures=failures)

        text = compose_fallback_text(text_fallback, refs)
        if not text:
            return DeliveryReport(result=None, media_delivered=False, failures=failures)

        result = await self._send_text(target, text)
        if failures:
            logger.info(f"[MediaTransfer] {self.platform} sent text fallback with {len(refs)} reference(s)")
        return DeliveryReport(result=result, media_delivered=False, failures=failures)

    async def _fetch(self, source: str, media_class: MediaClass | None) -> MediaAsset:
        try:
            read = await read_media(
                source,
                timeout_ms=self.media_timeout_ms,
                max_size=self.max_size,
                client=self._http_client,
            )
        except (FileSizeLimitError, MediaTimeoutError):
            raise
        except HttpError as e:
            raise UploadError("Media fetch failed", self.platform, status=e.status, body=e.body) from e
        except (OSError, ValueError, httpx.HTTPError) as e:
            raise UploadError(f"Media read failed: {e}", self.platform) from e

        if media_class is None:
            media_class = sniff_media_class(read.buffer) or _class_from_content_type(read.content_type)
            self.channel.check_supported(media_class)

        return MediaAsset(
            source_ref=source,
            media_class=media_class,
            data=read.buffer,
            file_name=read.file_name,
        )

    async def _prepare_voice(self, asset: MediaAsset) -> MediaAsset:
        """语音策略: 先转码，任何失败都回退为原始字节"""
        suffix = PurePosixPath(asset.file_name).suffix or ".audio"
        try:
            encoded = await self.transcoder(asset.data, suffix)
        except Exception as e:
            logger.warning(
                f"[MediaTransfer] Voice transcode failed, uploading original bytes: {asset.source_ref}: {e}"
            )
            return asset
        if encoded is asset.data:
            return asset
        return MediaAsset(
            source_ref=asset.source_ref,
            media_class=asset.media_class,
            data=encoded,
            file_name=str(PurePosixPath(asset.file_name).with_suffix(".silk")),
        )

    async def _upload(
        self,
        target: DeliveryTarget,
        media_class: MediaClass,
        source: str,
        **kwargs: Any,
    ) -> str:
        try:
            async with asyncio.timeout(self.media_timeout_ms / 1000):
                return await self.channel.upload(target, media_class, **kwargs)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise MediaTimeoutError(self.media_timeout_ms, "upload", source) from e
        except ChannelError:
            raise
        except Exception as e:
            raise UploadError(f"Media upload failed: {e}", self.platform) from e

    async def _send_media(
        self,
        target: DeliveryTarget,
        handle: str,
        media_class: MediaClass,
        source: str,
        file_name: str,
    ) -> SendResult:
        try:
            async with asyncio.timeout(self.media_timeout_ms / 1000):
                return await self.channel.send_media(target, handle, media_class, file_name=file_name)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise MediaTimeoutError(self.media_timeout_ms, "send", source) from e
        except ChannelError:
            raise
        except Exception as e:
            raise SendError(f"Media send failed: {e}", self.platform) from e

    async def _send_text(self, target: DeliveryTarget, text: str) -> SendResult:
        try:
            async with asyncio.timeout(self.media_timeout_ms / 1000):
                return await self.channel.send_text(target, text)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise MediaTimeoutError(self.media_timeout_ms, "send", "text") from e
        except ChannelError:
            raise
        except Exception as e:
            raise SendError(f"Text send failed: {e}", self.platform) from e


def _class_from_content_type(content_type: str) -> MediaClass:
    major = content_type.split("/", 1)[0].lower() if content_type else ""
    if major in ("image", "audio", "video"):
        return MediaClass(major)
    return MediaClass.FILE


def _coerce_media_class(kind: MediaClass | str, platform: str) -> MediaClass:
    try:
        return MediaClass(kind)
    except ValueError:
        raise UnsupportedMediaTypeError(str(kind), platform, f"Unknown media class '{kind}'") from None
