"""
Callback routes: 平台事件回调入口

- GET  /callbacks/wecom/{account}     企业微信 URL 验证（返回解密后的 echostr）
- POST /callbacks/wecom/{account}     企业微信消息回调（XML <Encrypt> 或 JSON encrypt）
- POST /callbacks/dingtalk/{account}  钉钉 HTTP 回调（返回加密的 "success"）
- POST /callbacks/feishu/{account}    飞书事件订阅（url_verification / 事件）
- POST /callbacks/qqbot/{account}     QQ 机器人 Webhook（op=13 验证 / op=0 事件）

验签或解密失败一律 403 空响应体，只记 warning 日志；未配置的账号 404。
"""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from ...channels.crypto import (
    CallbackSecret,
    FeishuEventCrypt,
    MsgCrypt,
    WebhookEnvelope,
    sign_qqbot_validation,
    verify_qqbot_signature,
)
from ...core.errors import ChannelError

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_ACCOUNT = "default"

# (platform, account, payload) -> None
InboundHandler = Callable[[str, str, Any], Awaitable[None]]


@dataclass(frozen=True)
class FeishuCallbackSecret:
    verification_token: str = ""
    encrypt_key: str = ""

    def __repr__(self) -> str:
        return "FeishuCallbackSecret(verification_token=***, encrypt_key=***)"


@dataclass
class CallbackRegistry:
    """各平台按账号名索引的回调密钥"""

    wecom: dict[str, CallbackSecret] = field(default_factory=dict)
    dingtalk: dict[str, CallbackSecret] = field(default_factory=dict)
    feishu: dict[str, FeishuCallbackSecret] = field(default_factory=dict)
    qqbot: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Any) -> CallbackRegistry:
        registry = cls()
        if secret := settings.wecom_callback_secret():
            registry.wecom[DEFAULT_ACCOUNT] = secret
        if secret := settings.wecom_app_callback_secret():
            registry.wecom["app"] = secret
        if secret := settings.dingtalk_callback_secret():
            registry.dingtalk[DEFAULT_ACCOUNT] = secret
        if settings.feishu_encrypt_key or settings.feishu_verification_token:
            registry.feishu[DEFAULT_ACCOUNT] = FeishuCallbackSecret(
                settings.feishu_verification_token, settings.feishu_encrypt_key
            )
        if settings.qqbot_client_secret:
            registry.qqbot[DEFAULT_ACCOUNT] = settings.qqbot_client_secret
        return registry


class CallbackRejected(Exception):
    """回调请求不可信（验签 / 解密 / 格式失败）"""


def _registry(request: Request) -> CallbackRegistry:
    return request.app.state.callbacks


def _lookup(accounts: dict[str, Any], platform: str, account: str) -> Any:
    secret = accounts.get(account)
    if secret is None:
        raise HTTPException(status_code=404, detail=f"Unknown {platform} account: {account}")
    return secret


def _reject(platform: str, account: str, error: Exception) -> Response:
    logger.warning(f"[Callback] Rejected {platform}/{account} callback: {error}")
    return Response(status_code=403)


async def _dispatch(request: Request, platform: str, account: str, payload: Any) -> None:
    handler: InboundHandler | None = request.app.state.inbound_handler
    if handler is None:
        logger.debug(f"[Callback] No inbound handler, dropping {platform}/{account} event")
        return
    await handler(platform, account, payload)


def _extract_encrypt(body: bytes, content_type: str) -> str:
    """从 XML <Encrypt> 或 JSON encrypt 字段取密文"""
    text = body.decode("utf-8")
    if "json" in content_type or text.lstrip().startswith("{"):
        data = json.loads(text)
        encrypt = (data.get("encrypt") or data.get("Encrypt")) if isinstance(data, dict) else None
    else:
        encrypt = ET.fromstring(text).findtext("Encrypt")
    if not encrypt:
        raise CallbackRejected("missing encrypt field")
    return encrypt


# ==================== 企业微信 ====================


@router.get("/callbacks/wecom/{account}")
async def wecom_verify_url(
    account: str,
    request: Request,
    msg_signature: str = "",
    timestamp: str = "",
    nonce: str = "",
    echostr: str = "",
):
    """回调 URL 验证: 解密 echostr 后原样返回明文"""
    secret = _lookup(_registry(request).wecom, "wecom", account)
    envelope = WebhookEnvelope(msg_signature, timestamp, nonce, echostr)
    try:
        plain = MsgCrypt(secret).verify_and_decrypt(envelope)
    except (ChannelError, ValueError) as e:
        return _reject("wecom", account, e)
    logger.info(f"[Callback] WeCom URL verified for account {account}")
    return PlainTextResponse(plain)


@router.post("/callbacks/wecom/{account}")
async def wecom_callback(
    account: str,
    request: Request,
    msg_signature: str = "",
    timestamp: str = "",
    nonce: str = "",
):
    secret = _lookup(_registry(request).wecom, "wecom", account)
    body = await request.body()
    try:
        ciphertext = _extract_encrypt(body, request.headers.get("content-type", ""))
        plain = MsgCrypt(secret).verify_and_decrypt(
            WebhookEnvelope(msg_signature, timestamp, nonce, ciphertext)
        )
    except (ChannelError, CallbackRejected, ValueError, ET.ParseError) as e:
        return _reject("wecom", account, e)

    await _dispatch(request, "wecom", account, plain)
    return PlainTextResponse("success")


# ==================== 钉钉 ====================


@router.post("/callbacks/dingtalk/{account}")
async def dingtalk_callback(
    account: str,
    request: Request,
    signature: str = "",
    timestamp: str = "",
    nonce: str = "",
):
    """钉钉 HTTP 回调: 解密事件，返回加密的 "success" """
    secret = _lookup(_registry(request).dingtalk, "dingtalk", account)
    body = await request.body()
    try:
        crypt = MsgCrypt(secret)
        ciphertext = _extract_encrypt(body, "application/json")
        plain = crypt.verify_and_decrypt(WebhookEnvelope(signature, timestamp, nonce, ciphertext))
    except (ChannelError, CallbackRejected, ValueError) as e:
        return _reject("dingtalk", account, e)

    await _dispatch(request, "dingtalk", account, plain)

    reply = crypt.encrypt("success", timestamp=timestamp or None, nonce=nonce or None)
    return {
        "msg_signature": reply.signature,
        "timeStamp": reply.timestamp,
        "nonce": reply.nonce,
        "encrypt": reply.ciphertext,
    }


# ==================== 飞书 ====================


def _feishu_token(event: dict[str, Any]) -> str:
    # v2 事件 token 在 header 中，v1 / url_verification 在顶层
    header = event.get("header")
    if isinstance(header, dict) and header.get("token"):
        return header["token"]
    return event.get("token", "")


@router.post("/callbacks/feishu/{account}")
async def feishu_callback(account: str, request: Request):
    secret: FeishuCallbackSecret = _lookup(_registry(request).feishu, "feishu", account)
    body = await request.body()
    try:
        # 配置了 encrypt_key 的账号只接受带签名的加密事件
        if secret.encrypt_key:
            signature = request.headers.get("x-lark-signature", "")
            if not signature:
                raise CallbackRejected("missing x-lark-signature header")
            FeishuEventCrypt(secret.encrypt_key).verify_signature(
                request.headers.get("x-lark-request-timestamp", ""),
                request.headers.get("x-lark-request-nonce", ""),
                body,
                signature,
            )

        event = json.loads(body)
        if not isinstance(event, dict):
            raise CallbackRejected("event body is not an object")
        if secret.encrypt_key and "encrypt" not in event:
            raise CallbackRejected("plaintext event on an encrypted account")
        if "encrypt" in event:
            if not secret.encrypt_key:
                raise CallbackRejected("encrypted event but no encrypt_key configured")
            event = json.loads(FeishuEventCrypt(secret.encrypt_key).decrypt(event["encrypt"]))
            if not isinstance(event, dict):
                raise CallbackRejected("decrypted event is not an object")

        if secret.verification_token and _feishu_token(event) != secret.verification_token:
            raise CallbackRejected("verification token mismatch")
    except (ChannelError, CallbackRejected, ValueError) as e:
        return _reject("feishu", account, e)

    if event.get("type") == "url_verification":
        logger.info(f"[Callback] Feishu URL verified for account {account}")
        return {"challenge": event.get("challenge", "")}

    await _dispatch(request, "feishu", account, event)
    return {}


# ==================== QQ 机器人 ====================


@router.post("/callbacks/qqbot/{account}")
async def qqbot_callback(account: str, request: Request):
    bot_secret: str = _lookup(_registry(request).qqbot, "qqbot", account)
    body = await request.body()
    try:
        verify_qqbot_signature(
            bot_secret,
            request.headers.get("x-signature-timestamp", ""),
            body,
            request.headers.get("x-signature-ed25519", ""),
        )
        payload = json.loads(body)
        if not isinstance(payload, dict):
            raise CallbackRejected("payload is not an object")
    except (ChannelError, CallbackRejected, ValueError) as e:
        return _reject("qqbot", account, e)

    op = payload.get("op")
    data = payload.get("d")
    if not isinstance(data, dict):
        data = {}

    if op == 13:
        plain_token = data.get("plain_token", "")
        event_ts = data.get("event_ts", "")
        logger.info(f"[Callback] QQBot URL validation for account {account}")
        return {
            "plain_token": plain_token,
            "signature": sign_qqbot_validation(bot_secret, event_ts, plain_token),
        }

    if op == 0:
        await _dispatch(request, "qqbot", account, payload)
    else:
        logger.debug(f"[Callback] QQBot op={op} ignored")
    # HTTP 回调 ACK
    return JSONResponse({"op": 12})
