"""
平台媒体通道

- QQBotMediaChannel: QQ 官方机器人（群聊 / C2C）
- DingTalkMediaChannel: 钉钉企业机器人
- WecomAppMediaChannel: 企业微信自建应用
"""

from ..token_cache import TokenCache
from .base import MediaChannel
from .dingtalk import DingTalkMediaChannel
from .qqbot import QQBotMediaChannel
from .wecom_app import WecomAppMediaChannel


def build_media_channels(settings=None, token_cache: TokenCache | None = None) -> dict[str, MediaChannel]:
    """按配置创建已配置凭证的媒体通道，键为平台名"""
    if settings is None:
        from ...config import settings

    channels: dict[str, MediaChannel] = {}
    if credential := settings.qqbot_credential():
        channels["qqbot"] = QQBotMediaChannel(credential, token_cache, sandbox=settings.qqbot_sandbox)
    if credential := settings.dingtalk_credential():
        channels["dingtalk"] = DingTalkMediaChannel(
            credential, token_cache, robot_code=settings.dingtalk_robot_code or None
        )
    if (credential := settings.wecom_app_credential()) and settings.wecom_app_agent_id:
        channels["wecom-app"] = WecomAppMediaChannel(credential, settings.wecom_app_agent_id, token_cache)
    return channels


__all__ = [
    "MediaChannel",
    "QQBotMediaChannel",
    "DingTalkMediaChannel",
    "WecomAppMediaChannel",
    "build_media_channels",
]
