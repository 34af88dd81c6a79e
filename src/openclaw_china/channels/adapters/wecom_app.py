"""
企业微信自建应用媒体通道

上传临时素材: POST /cgi-bin/media/upload?access_token=...&type=... → media_id
发送应用消息: POST /cgi-bin/message/send (单聊)
发送群聊消息: POST /cgi-bin/appchat/send (chatid)

语音消息只接受 AMR，其他音频按文件发送。
"""

import logging
import mimetypes
import time
from pathlib import PurePosixPath
from typing import Any

import httpx

from ...core.errors import SendError, UploadError
from ..media.types import MediaAsset, MediaClass
from ..token_cache import AccountCredential, TokenCache
from ..types import DeliveryTarget, SendResult
from .base import MediaChannel

logger = logging.getLogger(__name__)

# 40001: 不合法的 secret/token, 40014: 不合法的 access_token, 42001: access_token 已过期
WECOM_TOKEN_REJECTED_CODES = frozenset({40001, 40014, 42001})


def wecom_media_type(media_class: MediaClass, file_name: str) -> str:
    if media_class is MediaClass.AUDIO:
        return "voice" if PurePosixPath(file_name).suffix.lower() == ".amr" else "file"
    return media_class.value


class WecomAppMediaChannel(MediaChannel):
    platform = "wecom-app"
    supported_classes = frozenset(MediaClass)
    supports_url_upload = False
    voice_codec = None

    API_BASE = "https://qyapi.weixin.qq.com/cgi-bin"

    def __init__(
        self,
        credential: AccountCredential,
        agent_id: str | int,
        token_cache: TokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(credential, token_cache, http_client)
        self.agent_id = int(agent_id)

    async def upload(
        self,
        target: DeliveryTarget,
        media_class: MediaClass,
        *,
        url: str | None = None,
        asset: MediaAsset | None = None,
    ) -> str:
        if asset is None:
            raise ValueError("WeCom media upload requires file data")

        media_type = wecom_media_type(media_class, asset.file_name)
        mime_type = mimetypes.guess_type(asset.file_name)[0] or "application/octet-stream"

        async def _call(token: str) -> str:
            data = await self._request_json(
                "POST",
                f"{self.API_BASE}/media/upload",
                params={"access_token": token, "type": media_type},
                files={"media": (asset.file_name, asset.data, mime_type)},
                error_cls=UploadError,
                what="WeCom media upload failed",
            )
            self._check_errcode(
                data, error_cls=UploadError, what="WeCom media upload failed",
                rejected_codes=WECOM_TOKEN_REJECTED_CODES,
            )
            media_id = data.get("media_id")
            if not media_id:
                raise UploadError("WeCom media upload failed: no media_id returned", self.platform, body=str(data))
            return media_id

        return await self._with_token(_call)

    async def _send(self, target: DeliveryTarget, msgtype: str, payload: dict[str, Any]) -> SendResult:
        if target.kind == "group":
            url = f"{self.API_BASE}/appchat/send"
            body: dict[str, Any] = {"chatid": target.id}
        else:
            url = f"{self.API_BASE}/message/send"
            body = {"touser": target.id, "agentid": self.agent_id}
        body.update({"msgtype": msgtype, msgtype: payload})
        what = f"WeCom {msgtype} send failed"

        async def _call(token: str) -> SendResult:
            data = await self._request_json(
                "POST", url,
                params={"access_token": token},
                json=body,
                error_cls=SendError,
                what=what,
            )
            self._check_errcode(
                data, error_cls=SendError, what=what,
                rejected_codes=WECOM_TOKEN_REJECTED_CODES,
            )
            return SendResult(id=str(data.get("msgid", "")), timestamp=int(time.time()))

        return await self._with_token(_call)

    async def send_media(
        self,
        target: DeliveryTarget,
        handle: str,
        media_class: MediaClass,
        *,
        file_name: str = "",
    ) -> SendResult:
        return await self._send(target, wecom_media_type(media_class, file_name), {"media_id": handle})

    async def send_text(self, target: DeliveryTarget, text: str) -> SendResult:
        return await self._send(target, "text", {"content": text})
