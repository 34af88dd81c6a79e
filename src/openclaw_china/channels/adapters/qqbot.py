"""
QQ 官方机器人媒体通道

群聊 / C2C 富媒体消息需要两步:
1. POST /v2/groups/{group_openid}/files 或 /v2/users/{openid}/files 上传，返回 file_info
2. POST .../messages 发送 msg_type=7 (media) 消息

file_type: 1=图片, 2=视频, 3=语音(仅 silk), 4=文件(群/C2C 暂未开放)

官方文档: https://bot.q.qq.com/wiki/develop/api-v2/server-inter/message/send-receive/rich-media.html
"""

import base64
import itertools
import logging
from typing import Any

import httpx

from ...core.errors import SendError, UnsupportedMediaTypeError, UploadError
from ..media.types import MediaAsset, MediaClass
from ..token_cache import AccountCredential, TokenCache
from ..types import DeliveryTarget, SendResult
from .base import MediaChannel

logger = logging.getLogger(__name__)

QQBOT_UNSUPPORTED_FILE_MESSAGE = (
    "QQ official C2C/group media API does not support generic files "
    "(file_type=4, e.g. PDF). Images and other supported media types are unaffected."
)


class QQBotMediaChannel(MediaChannel):
    platform = "qqbot"
    supported_classes = frozenset({MediaClass.IMAGE, MediaClass.VIDEO, MediaClass.AUDIO})
    supports_url_upload = True
    voice_codec = "silk"

    API_BASE = "https://api.sgroup.qq.com"
    SANDBOX_API_BASE = "https://sandbox.api.sgroup.qq.com"

    FILE_TYPES = {
        MediaClass.IMAGE: 1,
        MediaClass.VIDEO: 2,
        MediaClass.AUDIO: 3,
        MediaClass.FILE: 4,
    }

    def __init__(
        self,
        credential: AccountCredential,
        token_cache: TokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        sandbox: bool = False,
    ):
        super().__init__(credential, token_cache, http_client)
        self.base_url = self.SANDBOX_API_BASE if sandbox else self.API_BASE
        # 同一 msg_id 的多条被动回复需要不同的 msg_seq
        self._seq = itertools.count(1)

    def check_supported(self, media_class: MediaClass) -> None:
        if media_class is MediaClass.FILE:
            raise UnsupportedMediaTypeError(
                media_class.value, self.platform, QQBOT_UNSUPPORTED_FILE_MESSAGE
            )
        super().check_supported(media_class)

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"QQBot {token}", "Content-Type": "application/json"}

    def _target_url(self, target: DeliveryTarget, resource: str) -> str:
        if target.kind == "group":
            return f"{self.base_url}/v2/groups/{target.id}/{resource}"
        if target.kind == "c2c":
            return f"{self.base_url}/v2/users/{target.id}/{resource}"
        if target.kind == "channel" and resource == "messages":
            return f"{self.base_url}/channels/{target.id}/messages"
        raise UnsupportedMediaTypeError(
            "media", self.platform, f"QQBot rich media is not available for target kind '{target.kind}'"
        )

    def _message_body(self, target: DeliveryTarget, body: dict[str, Any]) -> dict[str, Any]:
        if target.reply_to:
            body["msg_id"] = target.reply_to
            body["msg_seq"] = next(self._seq)
        return body

    async def upload(
        self,
        target: DeliveryTarget,
        media_class: MediaClass,
        *,
        url: str | None = None,
        asset: MediaAsset | None = None,
    ) -> str:
        body: dict[str, Any] = {"file_type": self.FILE_TYPES[media_class], "srv_send_msg": False}
        if url:
            body["url"] = url
        elif asset is not None:
            body["file_data"] = base64.b64encode(asset.data).decode("ascii")
        else:
            raise ValueError("QQBot file upload requires url or file data")

        endpoint = self._target_url(target, "files")

        async def _call(token: str) -> str:
            data = await self._request_json(
                "POST", endpoint, headers=self._headers(token), json=body,
                error_cls=UploadError, what="QQBot media upload failed",
            )
            file_info = data.get("file_info")
            if not file_info:
                raise UploadError(
                    "QQBot file upload failed: no file_info returned", self.platform, body=str(data)
                )
            return file_info

        return await self._with_token(_call)

    async def _post_message(self, target: DeliveryTarget, body: dict[str, Any], what: str) -> SendResult:
        endpoint = self._target_url(target, "messages")
        body = self._message_body(target, body)

        async def _call(token: str) -> SendResult:
            data = await self._request_json(
                "POST", endpoint, headers=self._headers(token), json=body,
                error_cls=SendError, what=what,
            )
            return SendResult(id=str(data.get("id", "")), timestamp=data.get("timestamp", 0))

        return await self._with_token(_call)

    async def send_media(
        self,
        target: DeliveryTarget,
        handle: str,
        media_class: MediaClass,
        *,
        file_name: str = "",
    ) -> SendResult:
        return await self._post_message(
            target,
            {"msg_type": 7, "media": {"file_info": handle}},
            f"QQBot {target.kind} media send failed",
        )

    async def send_text(self, target: DeliveryTarget, text: str) -> SendResult:
        return await self._post_message(
            target,
            {"msg_type": 0, "content": text},
            f"QQBot {target.kind} text send failed",
        )
