"""
回调签名校验与消息加解密

企业微信（智能机器人 / 自建应用）与钉钉 HTTP 回调使用同一套方案:
- 签名: sha1(sorted(token, timestamp, nonce, encrypt)) 十六进制
- 加密: AES-256-CBC，key = base64(EncodingAESKey + "=")，iv = key[:16]
- 明文: random(16B) + msg_len(4B, 网络字节序) + msg + receive_id，PKCS#7 填充到 32 字节

另外提供:
- 飞书事件加密（key = sha256(encrypt_key)，iv 随密文前 16 字节传输）
- QQ 机器人回调 Ed25519 签名（由 bot secret 派生种子）

任何一步失败都抛异常拒绝回调，不存在“当作明文处理”的降级路径。

参考:
- https://developer.work.weixin.qq.com/document/path/90968
- https://open.feishu.cn/document/server-docs/event-subscription-guide/event-subscription-configure-/encrypt-key-encryption-configuration-case
- https://bot.q.qq.com/wiki/develop/api-v2/dev-prepare/interface-framework/sign.html
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
import secrets
import struct
import time
from dataclasses import dataclass

from Crypto.Cipher import AES
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey

from ..core.errors import EnvelopeIntegrityError, SignatureError

logger = logging.getLogger(__name__)

# 企业微信 PKCS#7 填充块大小（非 AES 的 16）
WECOM_BLOCK_SIZE = 32
# 随机前缀 + 4 字节长度
_PREFIX_LEN = 16
_HEADER_LEN = _PREFIX_LEN + 4
# 单个回调密文上限（base64 字符数）
MAX_CIPHERTEXT_LENGTH = 1024 * 1024


@dataclass(frozen=True)
class WebhookEnvelope:
    """签名 + 加密的回调外壳（仅在一次校验/解密调用中存在）"""

    signature: str
    timestamp: str
    nonce: str
    ciphertext: str


@dataclass(frozen=True)
class CallbackSecret:
    """
    回调共享密钥

    Attributes:
        token: 回调 Token（参与签名）
        encoding_aes_key: 43 字符 EncodingAESKey
        receive_id: 明文尾部标识（企业微信应用为 CorpID，钉钉为 Client ID，
            智能机器人为空字符串，为空时不校验）
    """

    token: str
    encoding_aes_key: str
    receive_id: str = ""

    def __repr__(self) -> str:
        return f"CallbackSecret(receive_id={self.receive_id!r})"


def _pkcs7_pad(data: bytes, block_size: int) -> bytes:
    pad_len = block_size - (len(data) % block_size)
    return data + bytes([pad_len]) * pad_len


def _pkcs7_unpad(data: bytes, block_size: int) -> bytes:
    if not data:
        raise EnvelopeIntegrityError("Empty plaintext")
    pad_len = data[-1]
    if pad_len < 1 or pad_len > block_size or pad_len > len(data):
        raise EnvelopeIntegrityError("Invalid PKCS#7 padding")
    if data[-pad_len:] != bytes([pad_len]) * pad_len:
        raise EnvelopeIntegrityError("Invalid PKCS#7 padding")
    return data[:-pad_len]


def _b64decode_strict(value: str | bytes) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EnvelopeIntegrityError(f"Ciphertext is not valid base64: {e}") from e


class MsgCrypt:
    """企业微信 / 钉钉回调加解密"""

    def __init__(self, secret: CallbackSecret):
        self.secret = secret
        try:
            key = base64.b64decode(secret.encoding_aes_key + "=")
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid EncodingAESKey: {e}") from e
        if len(key) != 32:
            raise ValueError(
                f"EncodingAESKey must decode to 32 bytes (43 chars), got {len(key)} bytes"
            )
        self.aes_key = key

    def _cipher(self):
        return AES.new(self.aes_key, AES.MODE_CBC, self.aes_key[:16])

    def signature(self, timestamp: str, nonce: str, ciphertext: str) -> str:
        """sha1(sorted(token, timestamp, nonce, ciphertext))"""
        items = sorted([self.secret.token, timestamp, nonce, ciphertext])
        return hashlib.sha1("".join(items).encode("utf-8")).hexdigest()

    def verify(self, envelope: WebhookEnvelope) -> None:
        expected = self.signature(envelope.timestamp, envelope.nonce, envelope.ciphertext)
        if not hmac.compare_digest(expected.encode(), (envelope.signature or "").encode("utf-8")):
            raise SignatureError("Callback signature mismatch")

    def decrypt(self, ciphertext: str) -> str:
        """解密 base64 密文并校验 长度 / receive_id"""
        if len(ciphertext) > MAX_CIPHERTEXT_LENGTH:
            raise EnvelopeIntegrityError(
                f"Ciphertext too long ({len(ciphertext)} > {MAX_CIPHERTEXT_LENGTH})"
            )
        encrypted = _b64decode_strict(ciphertext)
        if not encrypted or len(encrypted) % AES.block_size:
            raise EnvelopeIntegrityError("Ciphertext is not block aligned")

        content = _pkcs7_unpad(self._cipher().decrypt(encrypted), WECOM_BLOCK_SIZE)
        if len(content) < _HEADER_LEN:
            raise EnvelopeIntegrityError("Plaintext shorter than header")

        msg_len = struct.unpack("!I", content[_PREFIX_LEN:_HEADER_LEN])[0]
        end = _HEADER_LEN + msg_len
        if end > len(content):
            raise EnvelopeIntegrityError(
                f"Declared length {msg_len} exceeds plaintext ({len(content) - _HEADER_LEN})"
            )

        receive_id = content[end:]
        expected_id = self.secret.receive_id.encode("utf-8")
        if expected_id and not hmac.compare_digest(receive_id, expected_id):
            raise EnvelopeIntegrityError("receive_id mismatch")

        try:
            return content[_HEADER_LEN:end].decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeIntegrityError("Payload is not valid UTF-8") from e

    def verify_and_decrypt(self, envelope: WebhookEnvelope) -> str:
        """先验签，通过后才解密"""
        self.verify(envelope)
        return self.decrypt(envelope.ciphertext)

    def encrypt(
        self,
        plaintext: str,
        timestamp: str | None = None,
        nonce: str | None = None,
    ) -> WebhookEnvelope:
        """加密被动回复并签名（nonce 应与回调中的一致）"""
        text = plaintext.encode("utf-8")
        plain = (
            os.urandom(_PREFIX_LEN)
            + struct.pack("!I", len(text))
            + text
            + self.secret.receive_id.encode("utf-8")
        )
        encrypted = self._cipher().encrypt(_pkcs7_pad(plain, WECOM_BLOCK_SIZE))
        ciphertext = base64.b64encode(encrypted).decode("ascii")

        timestamp = timestamp or str(int(time.time()))
        nonce = nonce or secrets.token_hex(8)
        return WebhookEnvelope(
            signature=self.signature(timestamp, nonce, ciphertext),
            timestamp=timestamp,
            nonce=nonce,
            ciphertext=ciphertext,
        )

    def decrypt_media(self, data: bytes) -> bytes:
        """
        解密智能机器人图片/文件下载内容

        下载 URL 返回的内容经同一 EncodingAESKey 加密，无长度头。
        """
        if not data or len(data) % AES.block_size:
            raise EnvelopeIntegrityError("Encrypted media is not block aligned")
        return _pkcs7_unpad(self._cipher().decrypt(data), WECOM_BLOCK_SIZE)


def verify_and_decrypt(envelope: WebhookEnvelope, secret: CallbackSecret) -> str:
    return MsgCrypt(secret).verify_and_decrypt(envelope)


def encrypt(
    plaintext: str,
    secret: CallbackSecret,
    timestamp: str | None = None,
    nonce: str | None = None,
) -> WebhookEnvelope:
    return MsgCrypt(secret).encrypt(plaintext, timestamp=timestamp, nonce=nonce)


# ==================== 飞书 ====================


class FeishuEventCrypt:
    """
    飞书事件订阅加解密

    - key = sha256(encrypt_key)
    - 密文 = base64(iv(16B) + AES-256-CBC(PKCS#7(16)))
    - 请求签名 X-Lark-Signature = sha256(timestamp + nonce + encrypt_key + body)
    """

    def __init__(self, encrypt_key: str):
        if not encrypt_key:
            raise ValueError("Feishu encrypt_key is empty")
        self.encrypt_key = encrypt_key
        self._key = hashlib.sha256(encrypt_key.encode("utf-8")).digest()

    def verify_signature(self, timestamp: str, nonce: str, body: bytes, signature: str) -> None:
        digest = hashlib.sha256(
            (timestamp + nonce + self.encrypt_key).encode("utf-8") + body
        ).hexdigest()
        if not hmac.compare_digest(digest.encode(), (signature or "").encode("utf-8")):
            raise SignatureError("Feishu request signature mismatch", "feishu")

    def decrypt(self, encrypt: str) -> str:
        if len(encrypt) > MAX_CIPHERTEXT_LENGTH:
            raise EnvelopeIntegrityError("Ciphertext too long", "feishu")
        raw = _b64decode_strict(encrypt)
        if len(raw) <= AES.block_size or len(raw) % AES.block_size:
            raise EnvelopeIntegrityError("Ciphertext is not block aligned", "feishu")
        cipher = AES.new(self._key, AES.MODE_CBC, raw[: AES.block_size])
        plain = _pkcs7_unpad(cipher.decrypt(raw[AES.block_size :]), AES.block_size)
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeIntegrityError("Payload is not valid UTF-8", "feishu") from e

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(AES.block_size)
        cipher = AES.new(self._key, AES.MODE_CBC, iv)
        encrypted = cipher.encrypt(_pkcs7_pad(plaintext.encode("utf-8"), AES.block_size))
        return base64.b64encode(iv + encrypted).decode("ascii")


# ==================== QQ 机器人 ====================


def _qqbot_signing_key(bot_secret: str) -> SigningKey:
    """bot secret 重复拼接到至少 32 字节后截断，作为 Ed25519 种子"""
    seed = bot_secret.encode("utf-8")
    if not seed:
        raise ValueError("QQBot secret is empty")
    while len(seed) < 32:
        seed = seed * 2
    return SigningKey(seed[:32])


def sign_qqbot_message(bot_secret: str, timestamp: str, body: bytes) -> str:
    """对 timestamp + body 签名，返回十六进制签名"""
    signed = _qqbot_signing_key(bot_secret).sign(timestamp.encode("utf-8") + body)
    return signed.signature.hex()


def sign_qqbot_validation(bot_secret: str, event_ts: str, plain_token: str) -> str:
    """op=13 回调地址验证: 对 event_ts + plain_token 签名"""
    return sign_qqbot_message(bot_secret, event_ts, plain_token.encode("utf-8"))


def verify_qqbot_signature(bot_secret: str, timestamp: str, body: bytes, signature: str) -> None:
    """
    校验 X-Signature-Ed25519 / X-Signature-Timestamp

    Raises:
        SignatureError: 签名缺失、格式错误或不匹配
    """
    if not signature or not timestamp:
        raise SignatureError("Missing QQBot signature headers", "qqbot")
    try:
        sig_bytes = bytes.fromhex(signature)
        verify_key = _qqbot_signing_key(bot_secret).verify_key
        verify_key.verify(timestamp.encode("utf-8") + body, sig_bytes)
    except (CryptoError, ValueError) as e:
        raise SignatureError(f"QQBot signature verification failed: {e}", "qqbot") from e
