"""
出站文本清洗与投递策略

Agent 输出在任何平台发送前都经过这里:
- sanitize: 去掉 <think> 思考块、[[...]] 指令标签、[chuckles] 这类语气/舞台标签，
  存在 <final> 时只保留其内容；出现 NO_REPLY 哨兵时整条清空
- should_suppress_when_media_present: 语音合成 (TTS) 的朗读文本与音频同时存在时不重复发文字
- evaluate_delivery: reply_final_only 策略下中间事件的投递决策

本模块不抛异常，总是返回字符串（可能为空）。
"""

import re
from dataclasses import dataclass

NO_REPLY_SENTINEL = "NO_REPLY"

_THINK_BLOCK = re.compile(r"<\s*(think|thinking)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
# 未闭合的 <think>: 其后全部视为思考内容
_THINK_UNCLOSED = re.compile(r"<\s*(?:think|thinking)\b[^>]*>.*\Z", re.IGNORECASE | re.DOTALL)
# 只有闭合标签: 之前全部视为思考内容
_THINK_CLOSE_PREFIX = re.compile(r"\A.*?<\s*/\s*(?:think|thinking)\s*>", re.IGNORECASE | re.DOTALL)

_FINAL_BLOCK = re.compile(r"<\s*final\b[^>]*>(.*?)<\s*/\s*final\s*>", re.IGNORECASE | re.DOTALL)
_FINAL_UNCLOSED = re.compile(r"<\s*final\b[^>]*>(.*)\Z", re.IGNORECASE | re.DOTALL)
_FINAL_TAG = re.compile(r"<\s*/?\s*final\b[^>]*>", re.IGNORECASE)

# [[reply_to_current]] / [[tts:text]] / [[/tts:text]]，连同其后空白
_DIRECTIVE_TAG = re.compile(r"\[\[[^\[\]]*\]\][ \t]*")
# [chuckles] / [playfully] / [sighs softly]，不匹配 markdown 链接 [text](url)
_STAGE_TAG = re.compile(r"\[[A-Za-z][A-Za-z _'\-]{1,40}\](?!\()[ \t]*")

_NO_REPLY = re.compile(r"(?<![A-Za-z0-9_])NO_REPLY(?![A-Za-z0-9_])", re.IGNORECASE)

_TTS_DIRECTIVE = re.compile(r"\[\[\s*/?\s*(?:tts\b[^\]]*|audio_as_voice)\s*\]\]", re.IGNORECASE)

_BLANK_LINES = re.compile(r"\n{3,}")


def _extract_final(text: str) -> str:
    finals = _FINAL_BLOCK.findall(text)
    if finals:
        return "\n".join(part.strip() for part in finals)
    match = _FINAL_UNCLOSED.search(text)
    if match:
        return match.group(1)
    return text


def sanitize(raw_text: str | None) -> str:
    """清洗 Agent 输出文本，返回可直接发送的内容（可能为空字符串）"""
    if not raw_text:
        return ""
    text = str(raw_text)

    text = _THINK_BLOCK.sub("", text)
    text = _THINK_UNCLOSED.sub("", text)
    text = _THINK_CLOSE_PREFIX.sub("", text)

    text = _extract_final(text)
    text = _FINAL_TAG.sub("", text)

    text = _DIRECTIVE_TAG.sub("", text)
    text = _STAGE_TAG.sub("", text)

    if _NO_REPLY.search(text):
        return ""

    text = "\n".join(line.rstrip() for line in text.splitlines())
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


def should_suppress_when_media_present(raw_text: str | None, cleaned_text: str | None) -> bool:
    """
    媒体（通常是 TTS 语音）随文本一起发送时，文本是否应省略。

    原文带 TTS 指令说明文字是语音的朗读稿，重复发送没有意义；
    清洗后为空的文本也没有发送价值。普通补充说明保留。
    """
    if not (cleaned_text or "").strip():
        return True
    return bool(_TTS_DIRECTIVE.search(raw_text or ""))


@dataclass(frozen=True)
class SanitizedMessage:
    raw_text: str
    cleaned_text: str
    suppressed: bool

    @property
    def text(self) -> str:
        """实际要发送的文本"""
        return "" if self.suppressed else self.cleaned_text


def build_outbound_message(raw_text: str | None, has_media: bool = False) -> SanitizedMessage:
    raw = raw_text or ""
    cleaned = sanitize(raw)
    suppressed = not cleaned or (has_media and should_suppress_when_media_present(raw, cleaned))
    return SanitizedMessage(raw_text=raw, cleaned_text=cleaned, suppressed=suppressed)


@dataclass(frozen=True)
class DeliveryDecision:
    skip_delivery: bool
    suppress_text: bool


def evaluate_delivery(
    *,
    kind: str,
    has_media: bool,
    sanitized_text: str = "",
    reply_final_only: bool | None = None,
) -> DeliveryDecision:
    """
    reply_final_only 投递决策

    - 策略关闭: 原样投递
    - final 事件: 总是投递（文本可能已被清洗为空）
    - 非 final 事件带媒体: 投递媒体，文本省略（媒体承载内容，文字多余或过早）
    - 非 final 事件无媒体: 跳过

    reply_final_only 未指定时取 settings.reply_final_only。
    sanitized_text 目前不影响决策，保留给调用方记录日志。
    """
    if reply_final_only is None:
        from ..config import settings

        reply_final_only = settings.reply_final_only
    if not reply_final_only or kind == "final":
        return DeliveryDecision(skip_delivery=False, suppress_text=False)
    if has_media:
        return DeliveryDecision(skip_delivery=False, suppress_text=True)
    return DeliveryDecision(skip_delivery=True, suppress_text=False)
