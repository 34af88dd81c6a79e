"""
openclaw-china 配置模块
"""

from pydantic import Field
from pydantic_settings import BaseSettings

from .channels.crypto import CallbackSecret
from .channels.token_cache import AccountCredential


class Settings(BaseSettings):
    """通道配置"""

    # 日志
    log_level: str = Field(default="INFO", description="日志级别")

    # === 媒体 ===
    max_file_size_mb: float = Field(default=100, description="媒体大小上限（MB）")
    media_timeout_ms: int = Field(default=30000, description="媒体读取/上传/发送超时（毫秒）")
    ffmpeg_path: str = Field(default="", description="ffmpeg 路径，留空则从 PATH 查找")

    # === Token ===
    token_safety_margin_seconds: int = Field(
        default=60, description="token 提前过期的安全余量（秒）"
    )

    # === 投递策略 ===
    reply_final_only: bool = Field(default=False, description="仅投递最终回复（中间事件带媒体时只发媒体）")
    asr_enabled: bool = Field(default=False, description="是否对入站语音做 ASR 预处理")

    # === 通道配置 ===
    # QQ 官方机器人
    qqbot_app_id: str = Field(default="", description="QQ 机器人 AppID")
    qqbot_client_secret: str = Field(default="", description="QQ 机器人 AppSecret")
    qqbot_sandbox: bool = Field(default=False, description="是否使用 QQ 沙箱环境")

    # 钉钉
    dingtalk_client_id: str = Field(default="", description="钉钉 Client ID (原 AppKey)")
    dingtalk_client_secret: str = Field(default="", description="钉钉 Client Secret (原 AppSecret)")
    dingtalk_robot_code: str = Field(default="", description="钉钉机器人 robotCode，留空则使用 Client ID")
    dingtalk_callback_token: str = Field(default="", description="钉钉 HTTP 回调 Token")
    dingtalk_callback_aes_key: str = Field(default="", description="钉钉 HTTP 回调 aes_key")

    # 飞书
    feishu_app_id: str = Field(default="", description="飞书 App ID")
    feishu_app_secret: str = Field(default="", description="飞书 App Secret")
    feishu_verification_token: str = Field(default="", description="飞书事件 Verification Token")
    feishu_encrypt_key: str = Field(default="", description="飞书事件 Encrypt Key")

    # 企业微信（智能机器人）
    wecom_token: str = Field(default="", description="企业微信机器人回调 Token")
    wecom_encoding_aes_key: str = Field(default="", description="企业微信机器人 EncodingAESKey")

    # 企业微信（自建应用）
    wecom_app_corp_id: str = Field(default="", description="企业微信 Corp ID")
    wecom_app_corp_secret: str = Field(default="", description="企业微信应用 Secret")
    wecom_app_agent_id: str = Field(default="", description="企业微信应用 AgentId")
    wecom_app_token: str = Field(default="", description="企业微信应用回调 Token")
    wecom_app_encoding_aes_key: str = Field(default="", description="企业微信应用 EncodingAESKey")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def max_file_size_bytes(self) -> int:
        """媒体大小上限（字节）"""
        return int(self.max_file_size_mb * 1024 * 1024)

    @property
    def media_timeout_seconds(self) -> float:
        return self.media_timeout_ms / 1000

    def qqbot_credential(self) -> AccountCredential | None:
        if not (self.qqbot_app_id and self.qqbot_client_secret):
            return None
        return AccountCredential("qqbot", self.qqbot_app_id, self.qqbot_client_secret)

    def dingtalk_credential(self) -> AccountCredential | None:
        if not (self.dingtalk_client_id and self.dingtalk_client_secret):
            return None
        return AccountCredential("dingtalk", self.dingtalk_client_id, self.dingtalk_client_secret)

    def feishu_credential(self) -> AccountCredential | None:
        if not (self.feishu_app_id and self.feishu_app_secret):
            return None
        return AccountCredential("feishu", self.feishu_app_id, self.feishu_app_secret)

    def wecom_app_credential(self) -> AccountCredential | None:
        if not (self.wecom_app_corp_id and self.wecom_app_corp_secret):
            return None
        return AccountCredential("wecom-app", self.wecom_app_corp_id, self.wecom_app_corp_secret)

    def wecom_callback_secret(self) -> CallbackSecret | None:
        """智能机器人回调：receive_id 为空字符串"""
        if not (self.wecom_token and self.wecom_encoding_aes_key):
            return None
        return CallbackSecret(self.wecom_token, self.wecom_encoding_aes_key, "")

    def wecom_app_callback_secret(self) -> CallbackSecret | None:
        """自建应用回调：receive_id 为 CorpID"""
        if not (self.wecom_app_token and self.wecom_app_encoding_aes_key):
            return None
        return CallbackSecret(
            self.wecom_app_token, self.wecom_app_encoding_aes_key, self.wecom_app_corp_id
        )

    def dingtalk_callback_secret(self) -> CallbackSecret | None:
        """钉钉 HTTP 回调：receive_id 为应用 Client ID"""
        if not (self.dingtalk_callback_token and self.dingtalk_callback_aes_key):
            return None
        return CallbackSecret(
            self.dingtalk_callback_token, self.dingtalk_callback_aes_key, self.dingtalk_client_id
        )


# 全局配置实例
settings = Settings()
