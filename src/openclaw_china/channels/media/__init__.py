"""
媒体处理

- reader: 按大小/超时预算读取 URL 或本地文件
- audio_utils: SILK 编解码（QQ 语音）与入站 ASR 预处理
- transfer: 上传 + 发送 + 文本降级
"""

from .audio_utils import prepare_inbound_voice
from .transfer import DeliveryReport, MediaTransfer
from .types import MediaAsset, MediaClass, detect_media_class

__all__ = [
    "DeliveryReport",
    "MediaAsset",
    "MediaClass",
    "MediaTransfer",
    "detect_media_class",
    "prepare_inbound_voice",
]
