"""
通道通用类型
"""

from dataclasses import dataclass
from typing import Literal

TargetKind = Literal["c2c", "group", "channel"]

_TARGET_PREFIXES: dict[str, TargetKind] = {
    "user": "c2c",
    "c2c": "c2c",
    "private": "c2c",
    "dm": "c2c",
    "group": "group",
    "chat": "group",
    "channel": "channel",
}


@dataclass(frozen=True)
class DeliveryTarget:
    """
    账号内的会话标识

    Attributes:
        kind: c2c (单聊) / group (群聊) / channel (频道)
        id: 平台侧会话 ID（openid / conversationId / userid）
        reply_to: 被动回复的原消息 ID（QQ 被动消息需要）
    """

    kind: TargetKind
    id: str
    reply_to: str | None = None

    @classmethod
    def parse(cls, value: str, reply_to: str | None = None) -> "DeliveryTarget":
        """解析 "user:123" / "group:abc" 形式的目标，无前缀视为单聊"""
        prefix, sep, rest = value.partition(":")
        if sep and prefix.lower() in _TARGET_PREFIXES and rest:
            return cls(_TARGET_PREFIXES[prefix.lower()], rest, reply_to)
        return cls("c2c", value, reply_to)

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(frozen=True)
class SendResult:
    """平台返回的消息 ID 和时间戳"""

    id: str
    timestamp: int | str = 0
