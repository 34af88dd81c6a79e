"""
FakeChannel: 记录调用的内存媒体通道，供 MediaTransfer 测试使用
"""

from unittest.mock import AsyncMock

from openclaw_china.channels.adapters.base import MediaChannel
from openclaw_china.channels.media.types import MediaClass
from openclaw_china.channels.token_cache import AccountCredential, TokenCache
from openclaw_china.channels.types import SendResult


class FakeChannel(MediaChannel):
    platform = "fake"

    def __init__(self, *, supported=None, url_upload=False, voice_codec=None):
        super().__init__(AccountCredential("fake", "app", "secret"), token_cache=TokenCache())
        if supported is not None:
            self.supported_classes = frozenset(supported)
        self.supports_url_upload = url_upload
        self.voice_codec = voice_codec

        self.upload_mock = AsyncMock(return_value="handle-1")
        self.send_media_mock = AsyncMock(return_value=SendResult(id="media-msg", timestamp=1))
        self.send_text_mock = AsyncMock(return_value=SendResult(id="text-msg", timestamp=2))

    async def upload(self, target, media_class: MediaClass, *, url=None, asset=None) -> str:
        return await self.upload_mock(target, media_class, url=url, asset=asset)

    async def send_media(self, target, handle, media_class, *, file_name=""):
        return await self.send_media_mock(target, handle, media_class, file_name=file_name)

    async def send_text(self, target, text):
        return await self.send_text_mock(target, text)
