"""
钉钉企业机器人媒体通道

上传: oapi /media/upload (multipart, access_token 查询参数) → media_id
发送: api.dingtalk.com/v1.0 机器人接口
  - 群聊: /robot/groupMessages/send (openConversationId 以 "cid" 开头)
  - 单聊: /robot/oToMessages/batchSend

消息类型参考: https://open.dingtalk.com/document/development/robot-message-type
- sampleText:     {"content": "..."}
- sampleImageMsg: {"photoURL": "..."} (URL 或 @mediaId)
- sampleFile:     {"mediaId": "@...", "fileName": "...", "fileType": "..."}
- sampleAudio:    {"mediaId": "@...", "duration": "3000"}
"""

import json
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

# 40014: 不合法的 access_token, 42001: access_token 超时, 88: 鉴权失败
DINGTALK_TOKEN_REJECTED_CODES = frozenset({40014, 42001, 88})


class DingTalkMediaChannel(MediaChannel):
    platform = "dingtalk"
    supported_classes = frozenset(MediaClass)
    supports_url_upload = False
    voice_codec = None

    OAPI_BASE = "https://oapi.dingtalk.com"
    API_BASE = "https://api.dingtalk.com/v1.0"

    UPLOAD_TYPES = {
        MediaClass.IMAGE: "image",
        MediaClass.AUDIO: "voice",
        MediaClass.VIDEO: "file",
        MediaClass.FILE: "file",
    }

    DEFAULT_VOICE_DURATION_MS = "3000"

    def __init__(
        self,
        credential: AccountCredential,
        token_cache: TokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        robot_code: str | None = None,
    ):
        super().__init__(credential, token_cache, http_client)
        self.robot_code = robot_code or credential.app_id

    @staticmethod
    def _is_group(target: DeliveryTarget) -> bool:
        return target.kind == "group" or target.id.startswith("cid")

    async def upload(
        self,
        target: DeliveryTarget,
        media_class: MediaClass,
        *,
        url: str | None = None,
        asset: MediaAsset | None = None,
    ) -> str:
        if asset is None:
            raise ValueError("DingTalk media upload requires file data")

        mime_type = mimetypes.guess_type(asset.file_name)[0] or "application/octet-stream"
        upload_type = self.UPLOAD_TYPES[media_class]

        async def _call(token: str) -> str:
            data = await self._request_json(
                "POST",
                f"{self.OAPI_BASE}/media/upload",
                params={"access_token": token},
                data={"type": upload_type},
                files={"media": (asset.file_name, asset.data, mime_type)},
                error_cls=UploadError,
                what="DingTalk media upload failed",
            )
            self._check_errcode(
                data, error_cls=UploadError, what="DingTalk media upload failed",
                rejected_codes=DINGTALK_TOKEN_REJECTED_CODES,
            )
            media_id = data.get("media_id")
            if not media_id:
                raise UploadError("DingTalk media upload failed: no media_id returned", self.platform, body=str(data))
            return media_id

        media_id = await self._with_token(_call)
        logger.info(f"[DingTalk] Uploaded {upload_type}: {asset.file_name} -> {media_id}")
        return media_id

    def _build_msg(self, handle: str, media_class: MediaClass, file_name: str) -> tuple[str, dict[str, Any]]:
        if media_class is MediaClass.IMAGE:
            return "sampleImageMsg", {"photoURL": handle}
        if media_class is MediaClass.AUDIO:
            return "sampleAudio", {"mediaId": handle, "duration": self.DEFAULT_VOICE_DURATION_MS}
        # 视频按文件发送（sampleVideo 需要封面图）
        ext = PurePosixPath(file_name).suffix.lstrip(".") or "file"
        return "sampleFile", {"mediaId": handle, "fileName": file_name or f"media.{ext}", "fileType": ext}

    async def _send(self, target: DeliveryTarget, msg_key: str, msg_param: dict[str, Any]) -> SendResult:
        if self._is_group(target):
            url = f"{self.API_BASE}/robot/groupMessages/send"
            body: dict[str, Any] = {"openConversationId": target.id}
        else:
            url = f"{self.API_BASE}/robot/oToMessages/batchSend"
            body = {"userIds": [target.id]}
        body.update({
            "robotCode": self.robot_code,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        })
        what = f"DingTalk {msg_key} send failed"

        async def _call(token: str) -> SendResult:
            data = await self._request_json(
                "POST", url,
                headers={"x-acs-dingtalk-access-token": token},
                json=body,
                error_cls=SendError,
                what=what,
            )
            if "processQueryKey" not in data:
                raise SendError(what, self.platform, body=json.dumps(data, ensure_ascii=False))
            return SendResult(id=data["processQueryKey"], timestamp=int(time.time() * 1000))

        logger.info(f"[DingTalk] Sending msgKey={msg_key} to {target}")
        return await self._with_token(_call)

    async def send_media(
        self,
        target: DeliveryTarget,
        handle: str,
        media_class: MediaClass,
        *,
        file_name: str = "",
    ) -> SendResult:
        msg_key, msg_param = self._build_msg(handle, media_class, file_name)
        return await self._send(target, msg_key, msg_param)

    async def send_text(self, target: DeliveryTarget, text: str) -> SendResult:
        return await self._send(target, "sampleText", {"content": text})
