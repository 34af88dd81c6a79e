"""
平台媒体通道组件测试（httpx.MockTransport 模拟平台 API）

覆盖:
- QQ 机器人: files 上传 (url / file_data)、msg_type=7 发送、401 重试
- 钉钉: media/upload multipart、机器人群聊/单聊发送、errcode 处理
- 企业微信应用: 素材上传、应用消息/群聊发送、token 失效重试
"""

import base64
import json

import httpx
import pytest

from openclaw_china.channels.adapters import (
    DingTalkMediaChannel,
    QQBotMediaChannel,
    WecomAppMediaChannel,
    build_media_channels,
)
from openclaw_china.channels.media.types import MediaAsset, MediaClass
from openclaw_china.channels.token_cache import AccountCredential, TokenCache
from openclaw_china.channels.types import DeliveryTarget, SendResult
from openclaw_china.config import Settings
from openclaw_china.core.errors import SendError, UnsupportedMediaTypeError, UploadError

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 8


class FakeTokens:
    def __init__(self):
        self.calls = 0

    async def __call__(self, client, credential):
        self.calls += 1
        return f"tok-{self.calls}", 7200


class FakeApi:
    """按顺序返回预置响应，并记录收到的请求"""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    def json(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
async def token_cache(tokens):
    cache = TokenCache(fetchers={"qqbot": tokens, "dingtalk": tokens, "wecom-app": tokens})
    yield cache
    await cache.aclose()


# =========================================================================
# QQ 机器人
# =========================================================================


class TestQQBotMediaChannel:

    CRED = AccountCredential("qqbot", "102000000", "bot-secret")

    def _channel(self, api, token_cache, **kwargs):
        return QQBotMediaChannel(self.CRED, token_cache, http_client=api.client(), **kwargs)

    async def test_upload_by_url_to_group(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"file_uuid": "u1", "file_info": "FI-1", "ttl": 0}))
        channel = self._channel(api, token_cache)

        handle = await channel.upload(
            DeliveryTarget("group", "G1"), MediaClass.IMAGE, url="https://cdn.example.com/cat.png"
        )

        assert handle == "FI-1"
        request = api.requests[0]
        assert str(request.url) == "https://api.sgroup.qq.com/v2/groups/G1/files"
        assert request.headers["authorization"] == "QQBot tok-1"
        assert api.json() == {
            "file_type": 1,
            "url": "https://cdn.example.com/cat.png",
            "srv_send_msg": False,
        }

    async def test_upload_bytes_to_user(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"file_info": "FI-2"}))
        channel = self._channel(api, token_cache)
        asset = MediaAsset("voice.silk", MediaClass.AUDIO, b"#!SILK_V3", "voice.silk")

        await channel.upload(DeliveryTarget("c2c", "U1"), MediaClass.AUDIO, asset=asset)

        assert api.requests[0].url.path == "/v2/users/U1/files"
        body = api.json()
        assert body["file_type"] == 3
        assert base64.b64decode(body["file_data"]) == b"#!SILK_V3"

    async def test_send_media_passive_reply(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"id": "msg-1", "timestamp": "2024-09-04T17:32:21+08:00"}))
        channel = self._channel(api, token_cache)

        result = await channel.send_media(
            DeliveryTarget("c2c", "U1", reply_to="incoming-1"), "FI-1", MediaClass.IMAGE
        )

        assert result == SendResult(id="msg-1", timestamp="2024-09-04T17:32:21+08:00")
        assert api.requests[0].url.path == "/v2/users/U1/messages"
        assert api.json() == {
            "msg_type": 7,
            "media": {"file_info": "FI-1"},
            "msg_id": "incoming-1",
            "msg_seq": 1,
        }

    async def test_msg_seq_increments(self, token_cache):
        api = FakeApi(
            httpx.Response(200, json={"id": "a"}),
            httpx.Response(200, json={"id": "b"}),
        )
        channel = self._channel(api, token_cache)
        target = DeliveryTarget("group", "G1", reply_to="incoming-1")
        await channel.send_text(target, "one")
        await channel.send_text(target, "two")
        assert [api.json(0)["msg_seq"], api.json(1)["msg_seq"]] == [1, 2]

    async def test_token_rejected_refreshes_and_retries_once(self, token_cache, tokens):
        api = FakeApi(
            httpx.Response(401, json={"code": 11244, "message": "token not exist or expire"}),
            httpx.Response(200, json={"id": "msg-2", "timestamp": 1}),
        )
        channel = self._channel(api, token_cache)

        result = await channel.send_text(DeliveryTarget("c2c", "U1"), "hi")

        assert result.id == "msg-2"
        assert tokens.calls == 2
        assert [r.headers["authorization"] for r in api.requests] == ["QQBot tok-1", "QQBot tok-2"]
        assert api.json() == {"msg_type": 0, "content": "hi"}

    async def test_upload_without_file_info(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"file_uuid": "u1"}))
        channel = self._channel(api, token_cache)
        with pytest.raises(UploadError, match="no file_info"):
            await channel.upload(DeliveryTarget("c2c", "U1"), MediaClass.IMAGE, url="https://x/a.png")

    async def test_upload_http_error_normalized(self, token_cache):
        api = FakeApi(httpx.Response(500, json={"code": 850012, "message": "upload failed"}))
        channel = self._channel(api, token_cache)
        with pytest.raises(UploadError) as exc:
            await channel.upload(DeliveryTarget("c2c", "U1"), MediaClass.IMAGE, url="https://x/a.png")
        assert exc.value.status == 500
        assert exc.value.body == "code=850012, message=upload failed"

    async def test_sandbox_base_url(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"id": "x"}))
        channel = self._channel(api, token_cache, sandbox=True)
        await channel.send_text(DeliveryTarget("group", "G1"), "hi")
        assert api.requests[0].url.host == "sandbox.api.sgroup.qq.com"

    async def test_guild_channel_text_only(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"id": "x"}))
        channel = self._channel(api, token_cache)
        await channel.send_text(DeliveryTarget("channel", "C1"), "hi")
        assert api.requests[0].url.path == "/channels/C1/messages"

        with pytest.raises(UnsupportedMediaTypeError):
            await channel.upload(DeliveryTarget("channel", "C1"), MediaClass.IMAGE, url="https://x/a.png")

    async def test_generic_files_unsupported(self, token_cache):
        channel = QQBotMediaChannel(self.CRED, token_cache)
        with pytest.raises(UnsupportedMediaTypeError):
            channel.check_supported(MediaClass.FILE)
        channel.check_supported(MediaClass.VIDEO)


# =========================================================================
# 钉钉
# =========================================================================


class TestDingTalkMediaChannel:

    CRED = AccountCredential("dingtalk", "ding-client-id", "ding-secret")

    def _channel(self, api, token_cache, **kwargs):
        return DingTalkMediaChannel(self.CRED, token_cache, http_client=api.client(), **kwargs)

    async def test_upload_multipart(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"errcode": 0, "errmsg": "ok", "media_id": "@m1", "type": "image"}))
        channel = self._channel(api, token_cache)
        asset = MediaAsset("/tmp/cat.png", MediaClass.IMAGE, PNG, "cat.png")

        media_id = await channel.upload(DeliveryTarget("c2c", "user1"), MediaClass.IMAGE, asset=asset)

        assert media_id == "@m1"
        request = api.requests[0]
        assert request.url.host == "oapi.dingtalk.com"
        assert request.url.path == "/media/upload"
        assert request.url.params["access_token"] == "tok-1"
        assert b'name="type"' in request.content
        assert b'filename="cat.png"' in request.content
        assert PNG in request.content

    async def test_upload_token_rejected_by_errcode(self, token_cache, tokens):
        api = FakeApi(
            httpx.Response(200, json={"errcode": 40014, "errmsg": "不合法的access_token"}),
            httpx.Response(200, json={"errcode": 0, "media_id": "@m2"}),
        )
        channel = self._channel(api, token_cache)
        asset = MediaAsset("a.pdf", MediaClass.FILE, b"%PDF", "a.pdf")

        assert await channel.upload(DeliveryTarget("c2c", "u"), MediaClass.FILE, asset=asset) == "@m2"
        assert tokens.calls == 2
        assert api.requests[1].url.params["access_token"] == "tok-2"

    async def test_upload_business_error(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"errcode": 40004, "errmsg": "不合法的媒体文件类型"}))
        channel = self._channel(api, token_cache)
        asset = MediaAsset("a.exe", MediaClass.FILE, b"MZ", "a.exe")
        with pytest.raises(UploadError) as exc:
            await channel.upload(DeliveryTarget("c2c", "u"), MediaClass.FILE, asset=asset)
        assert exc.value.status == 40004

    async def test_upload_requires_bytes(self, token_cache):
        channel = self._channel(FakeApi(), token_cache)
        with pytest.raises(ValueError):
            await channel.upload(DeliveryTarget("c2c", "u"), MediaClass.IMAGE, url="https://x/a.png")

    async def test_send_image_to_group_conversation(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"processQueryKey": "pqk-1"}))
        channel = self._channel(api, token_cache)

        result = await channel.send_media(DeliveryTarget.parse("cidAbC123=="), "@m1", MediaClass.IMAGE)

        assert result.id == "pqk-1"
        request = api.requests[0]
        assert str(request.url) == "https://api.dingtalk.com/v1.0/robot/groupMessages/send"
        assert request.headers["x-acs-dingtalk-access-token"] == "tok-1"
        body = api.json()
        assert body["openConversationId"] == "cidAbC123=="
        assert body["robotCode"] == "ding-client-id"
        assert body["msgKey"] == "sampleImageMsg"
        assert json.loads(body["msgParam"]) == {"photoURL": "@m1"}

    async def test_send_to_user(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"processQueryKey": "pqk-2"}))
        channel = self._channel(api, token_cache, robot_code="robot-x")

        await channel.send_text(DeliveryTarget("c2c", "staff-1"), "你好")

        assert api.requests[0].url.path == "/v1.0/robot/oToMessages/batchSend"
        body = api.json()
        assert body["userIds"] == ["staff-1"]
        assert body["robotCode"] == "robot-x"
        assert body["msgKey"] == "sampleText"
        assert json.loads(body["msgParam"]) == {"content": "你好"}

    async def test_video_sent_as_file(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"processQueryKey": "pqk"}))
        channel = self._channel(api, token_cache)
        await channel.send_media(DeliveryTarget("group", "cid1"), "@v1", MediaClass.VIDEO, file_name="clip.mp4")
        body = api.json()
        assert body["msgKey"] == "sampleFile"
        assert json.loads(body["msgParam"]) == {"mediaId": "@v1", "fileName": "clip.mp4", "fileType": "mp4"}

    async def test_audio_message(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"processQueryKey": "pqk"}))
        channel = self._channel(api, token_cache)
        await channel.send_media(DeliveryTarget("c2c", "u"), "@a1", MediaClass.AUDIO, file_name="v.mp3")
        assert json.loads(api.json()["msgParam"]) == {"mediaId": "@a1", "duration": "3000"}

    async def test_missing_process_query_key(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"code": "InvalidParameter", "message": "robotCode invalid"}))
        channel = self._channel(api, token_cache)
        with pytest.raises(SendError, match="robotCode invalid"):
            await channel.send_text(DeliveryTarget("c2c", "u"), "hi")


# =========================================================================
# 企业微信应用
# =========================================================================


class TestWecomAppMediaChannel:

    CRED = AccountCredential("wecom-app", "ww-corp", "corp-secret")

    def _channel(self, api, token_cache):
        return WecomAppMediaChannel(self.CRED, "1000002", token_cache, http_client=api.client())

    @pytest.mark.parametrize(
        "file_name, media_class, expected_type",
        [
            ("voice.amr", MediaClass.AUDIO, "voice"),
            ("voice.mp3", MediaClass.AUDIO, "file"),
            ("cat.png", MediaClass.IMAGE, "image"),
            ("clip.mp4", MediaClass.VIDEO, "video"),
        ],
    )
    async def test_upload_type(self, token_cache, file_name, media_class, expected_type):
        api = FakeApi(httpx.Response(200, json={"errcode": 0, "type": expected_type, "media_id": "MID"}))
        channel = self._channel(api, token_cache)
        asset = MediaAsset(file_name, media_class, b"data", file_name)

        assert await channel.upload(DeliveryTarget("c2c", "zhangsan"), media_class, asset=asset) == "MID"
        params = api.requests[0].url.params
        assert params["type"] == expected_type
        assert params["access_token"] == "tok-1"

    async def test_send_image_to_user(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"errcode": 0, "errmsg": "ok", "msgid": "MSGID"}))
        channel = self._channel(api, token_cache)

        result = await channel.send_media(DeliveryTarget("c2c", "zhangsan"), "MID", MediaClass.IMAGE)

        assert result.id == "MSGID"
        assert api.requests[0].url.path == "/cgi-bin/message/send"
        assert api.json() == {
            "touser": "zhangsan",
            "agentid": 1000002,
            "msgtype": "image",
            "image": {"media_id": "MID"},
        }

    async def test_send_text_to_group_chat(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"errcode": 0, "errmsg": "ok"}))
        channel = self._channel(api, token_cache)

        await channel.send_text(DeliveryTarget("group", "chat-1"), "hello")

        assert api.requests[0].url.path == "/cgi-bin/appchat/send"
        assert api.json() == {"chatid": "chat-1", "msgtype": "text", "text": {"content": "hello"}}

    async def test_expired_token_retried(self, token_cache, tokens):
        api = FakeApi(
            httpx.Response(200, json={"errcode": 42001, "errmsg": "access_token expired"}),
            httpx.Response(200, json={"errcode": 0, "msgid": "M2"}),
        )
        channel = self._channel(api, token_cache)
        result = await channel.send_text(DeliveryTarget("c2c", "u"), "hi")
        assert result.id == "M2"
        assert tokens.calls == 2

    async def test_business_error(self, token_cache):
        api = FakeApi(httpx.Response(200, json={"errcode": 81013, "errmsg": "user & party & tag all invalid"}))
        channel = self._channel(api, token_cache)
        with pytest.raises(SendError) as exc:
            await channel.send_text(DeliveryTarget("c2c", "nobody"), "hi")
        assert exc.value.status == 81013


class TestBuildMediaChannels:

    async def test_only_configured_platforms(self, token_cache):
        settings = Settings(
            _env_file=None,
            qqbot_app_id="102000000",
            qqbot_client_secret="secret",
            qqbot_sandbox=True,
            dingtalk_client_id="ding-id",
            dingtalk_client_secret="ding-secret",
            dingtalk_robot_code="robot-1",
            wecom_app_corp_id="ww-corp",
            wecom_app_corp_secret="corp-secret",
        )
        channels = build_media_channels(settings, token_cache)

        assert set(channels) == {"qqbot", "dingtalk"}
        assert channels["qqbot"].base_url == QQBotMediaChannel.SANDBOX_API_BASE
        assert channels["dingtalk"].robot_code == "robot-1"
        assert channels["qqbot"].token_cache is token_cache
