"""
媒体读取

read_media(source, timeout_ms, max_size) 把 URL 或本地路径读成字节:
- 远程: httpx 流式下载，Content-Length 超限直接拒绝，下载中累计超限立即中止
- 本地: 先 stat 判断大小，超限不读取
- 整个读取受 timeout_ms 约束，超时取消并抛 MediaTimeoutError
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from ...core.errors import FileSizeLimitError, HttpError, MediaTimeoutError
from .types import is_http_url, reference_name

logger = logging.getLogger(__name__)

# 下载失败时最多读取的错误响应体字节数
_ERROR_BODY_PEEK = 4096


@dataclass
class ReadMediaResult:
    buffer: bytes
    file_name: str
    content_type: str = ""


def _local_path(source: str) -> Path:
    if source.lower().startswith("file://"):
        return Path(unquote(urlparse(source).path))
    return Path(source).expanduser()


async def _read_local(source: str, max_size: int) -> ReadMediaResult:
    path = _local_path(source)
    size = path.stat().st_size
    if size > max_size:
        raise FileSizeLimitError(max_size, size, source)

    data = await asyncio.to_thread(path.read_bytes)
    # 文件在 stat 之后可能仍在增长
    if len(data) > max_size:
        raise FileSizeLimitError(max_size, len(data), source)
    return ReadMediaResult(buffer=data, file_name=path.name)


async def _read_remote(url: str, max_size: int, client: httpx.AsyncClient) -> ReadMediaResult:
    async with client.stream("GET", url) as resp:
        if resp.status_code >= 400:
            peek = bytearray()
            async for chunk in resp.aiter_bytes():
                peek.extend(chunk)
                if len(peek) >= _ERROR_BODY_PEEK:
                    break
            raise HttpError("Media download failed", status=resp.status_code, body=bytes(peek))

        declared = resp.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > max_size:
            raise FileSizeLimitError(max_size, int(declared), url)

        buffer = bytearray()
        async for chunk in resp.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) > max_size:
                raise FileSizeLimitError(max_size, len(buffer), url)

        content_type = resp.headers.get("content-type", "").split(";", 1)[0].strip()

    return ReadMediaResult(
        buffer=bytes(buffer),
        file_name=reference_name(url),
        content_type=content_type,
    )


async def read_media(
    source: str,
    *,
    timeout_ms: int,
    max_size: int,
    client: httpx.AsyncClient | None = None,
) -> ReadMediaResult:
    """
    在 (timeout_ms, max_size) 预算内读取媒体

    Raises:
        FileSizeLimitError: 超过 max_size（在读完之前抛出）
        MediaTimeoutError: 超过 timeout_ms
        HttpError: 远程下载返回错误状态码
        FileNotFoundError: 本地文件不存在
    """
    owns_client = client is None and is_http_url(source)
    if owns_client:
        client = httpx.AsyncClient(follow_redirects=True)

    try:
        async with asyncio.timeout(timeout_ms / 1000):
            if is_http_url(source):
                result = await _read_remote(source, max_size, client)
            else:
                result = await _read_local(source, max_size)
    except (TimeoutError, httpx.TimeoutException) as e:
        raise MediaTimeoutError(timeout_ms, "read", source) from e
    finally:
        if owns_client:
            await client.aclose()

    logger.debug(f"[MediaReader] Read {len(result.buffer)} bytes from {source}")
    return result
