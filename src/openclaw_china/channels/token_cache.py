"""
access_token 缓存

各平台（QQ 机器人、钉钉、企业微信应用、飞书）都使用 AppID + Secret 换取
有效期约 2 小时的 access_token。TokenCache 负责:
- 按 (platform, app_id) 缓存 token，提前 safety_margin 秒视为过期
- 单飞刷新: 同一账号并发请求只发一次网络请求，所有等待者拿到同一结果
- 显式失效: 收到 401 时 invalidate，之后必定重新获取

TokenCache 是显式对象，由适配器注入或持有；模块级 get_token 等函数
只是对默认实例的便捷封装，测试应自行构造独立实例。
"""

import asyncio
import hashlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from ..core.errors import AuthError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SAFETY_MARGIN = 60
DEFAULT_REFRESH_TIMEOUT = 15.0

QQBOT_TOKEN_URL = "https://bots.qq.com/app/getAppAccessToken"
DINGTALK_TOKEN_URL = "https://oapi.dingtalk.com/gettoken"
WECOM_TOKEN_URL = "https://qyapi.weixin.qq.com/cgi-bin/gettoken"
FEISHU_TOKEN_URL = "https://open.feishu.cn/open-apis/auth/v3/tenant_access_token/internal"


def make_account_key(platform: str, app_id: str) -> str:
    """账号缓存键: sha256(platform:app_id)，不暴露原始 app_id"""
    return hashlib.sha256(f"{platform}:{app_id}".encode()).hexdigest()[:32]


@dataclass(frozen=True)
class AccountCredential:
    """单个平台账号的凭据（由适配器从配置解析，解析后不可变）"""

    platform: str
    app_id: str
    secret: str

    @property
    def account_key(self) -> str:
        return make_account_key(self.platform, self.app_id)

    def __repr__(self) -> str:
        return f"AccountCredential(platform={self.platform!r}, app_id={self.app_id!r})"


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: float
    account_key: str

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


TokenFetcher = Callable[[httpx.AsyncClient, AccountCredential], Awaitable[tuple[str, int]]]
"""(client, credential) -> (access_token, ttl_seconds)"""


# ==================== 平台 token 获取 ====================


def _parse_token_response(resp: httpx.Response, platform: str) -> dict[str, Any]:
    if resp.status_code >= 400:
        raise AuthError(
            "Failed to get access token", platform, status=resp.status_code, body=resp.text
        )
    try:
        data = resp.json()
    except ValueError:
        raise AuthError(
            "Token response is not JSON", platform, status=resp.status_code, body=resp.text
        )
    if not isinstance(data, dict):
        raise AuthError("Unexpected token response", platform, status=resp.status_code, body=resp.text)
    return data


async def fetch_qqbot_token(client: httpx.AsyncClient, credential: AccountCredential) -> tuple[str, int]:
    """QQ 官方机器人: POST getAppAccessToken（expires_in 为字符串）"""
    resp = await client.post(
        QQBOT_TOKEN_URL,
        json={"appId": credential.app_id, "clientSecret": credential.secret},
    )
    data = _parse_token_response(resp, "qqbot")
    token = data.get("access_token")
    if not token:
        raise AuthError(
            "QQBot token response missing access_token", "qqbot",
            status=data.get("code", resp.status_code), body=resp.text,
        )
    return token, int(data.get("expires_in", 7200))


async def fetch_dingtalk_token(client: httpx.AsyncClient, credential: AccountCredential) -> tuple[str, int]:
    """钉钉: GET gettoken?appkey&appsecret"""
    resp = await client.get(
        DINGTALK_TOKEN_URL,
        params={"appkey": credential.app_id, "appsecret": credential.secret},
    )
    data = _parse_token_response(resp, "dingtalk")
    if data.get("errcode", 0) != 0 or not data.get("access_token"):
        raise AuthError(
            "DingTalk gettoken failed", "dingtalk", status=data.get("errcode"), body=resp.text
        )
    return data["access_token"], int(data.get("expires_in", 7200))


async def fetch_wecom_app_token(client: httpx.AsyncClient, credential: AccountCredential) -> tuple[str, int]:
    """企业微信应用: GET cgi-bin/gettoken?corpid&corpsecret"""
    resp = await client.get(
        WECOM_TOKEN_URL,
        params={"corpid": credential.app_id, "corpsecret": credential.secret},
    )
    data = _parse_token_response(resp, "wecom-app")
    if data.get("errcode", 0) != 0 or not data.get("access_token"):
        raise AuthError(
            "WeCom gettoken failed", "wecom-app", status=data.get("errcode"), body=resp.text
        )
    return data["access_token"], int(data.get("expires_in", 7200))


async def fetch_feishu_token(client: httpx.AsyncClient, credential: AccountCredential) -> tuple[str, int]:
    """飞书: POST tenant_access_token/internal"""
    resp = await client.post(
        FEISHU_TOKEN_URL,
        json={"app_id": credential.app_id, "app_secret": credential.secret},
    )
    data = _parse_token_response(resp, "feishu")
    if data.get("code", 0) != 0 or not data.get("tenant_access_token"):
        raise AuthError(
            "Feishu tenant_access_token failed", "feishu", status=data.get("code"), body=resp.text
        )
    return data["tenant_access_token"], int(data.get("expire", 7200))


TOKEN_FETCHERS: dict[str, TokenFetcher] = {
    "qqbot": fetch_qqbot_token,
    "dingtalk": fetch_dingtalk_token,
    "wecom-app": fetch_wecom_app_token,
    "feishu": fetch_feishu_token,
}


# ==================== 缓存 ====================


def _consume_exception(task: asyncio.Task) -> None:
    # 所有等待者都被取消时，避免 "Task exception was never retrieved"
    if not task.cancelled():
        task.exception()


class TokenCache:
    """
    进程内 access_token 缓存

    生命周期: 构造时为空 → get_token 填充 → invalidate / invalidate_all 清除
    → aclose 释放。条目不会被后台任务悄悄清理，只在读取时按 expires_at 判断。
    """

    def __init__(
        self,
        fetchers: dict[str, TokenFetcher] | None = None,
        http_client: httpx.AsyncClient | None = None,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            fetchers: 额外/覆盖的平台 token 获取函数，键为平台名
            http_client: 共享的 httpx 客户端（为空时按需创建并由本对象关闭）
            safety_margin: 提前过期秒数，避免 token 在请求途中失效
            refresh_timeout: 单次刷新请求超时（秒）
            clock: 时间源（测试注入）
        """
        self._fetchers = dict(TOKEN_FETCHERS)
        if fetchers:
            self._fetchers.update(fetchers)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._safety_margin = safety_margin
        self._refresh_timeout = refresh_timeout
        self._clock = clock

        self._entries: dict[str, CachedToken] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, account_key: str) -> CachedToken | None:
        """查看缓存条目（不触发刷新，可能已过期）"""
        return self._entries.get(account_key)

    async def get_token(self, credential: AccountCredential) -> str:
        """返回有效 token，缺失或过期时刷新（同一账号并发只刷新一次）"""
        key = credential.account_key
        entry = self._entries.get(key)
        if entry and entry.is_valid(self._clock()):
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._refresh(credential), name=f"token-refresh-{credential.platform}"
            )
            task.add_done_callback(_consume_exception)
            self._inflight[key] = task

        # shield: 单个等待者被取消不影响其他等待者
        token = await asyncio.shield(task)
        return token.value

    def invalidate(self, account_key: str) -> None:
        """丢弃缓存条目；进行中的刷新结果仍交给其等待者，但不再写入缓存"""
        self._entries.pop(account_key, None)
        self._inflight.pop(account_key, None)
        logger.info(f"[TokenCache] Invalidated token {account_key[:8]}")

    def invalidate_all(self) -> None:
        """清空所有条目（凭据轮换 / 测试）"""
        self._entries.clear()
        self._inflight.clear()
        logger.info("[TokenCache] Invalidated all tokens")

    async def aclose(self) -> None:
        self.invalidate_all()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._refresh_timeout)
        return self._http_client

    async def _refresh(self, credential: AccountCredential) -> CachedToken:
        key = credential.account_key
        me = asyncio.current_task()
        try:
            value, ttl = await self._fetch(credential)
            now = self._clock()
            # ttl 不足安全余量时只交给本次等待者，不复用
            token = CachedToken(value, max(now + ttl - self._safety_margin, now), key)
            if self._inflight.get(key) is me:
                self._entries[key] = token
                logger.info(
                    f"[TokenCache] {credential.platform} token refreshed "
                    f"(app_id={credential.app_id}, ttl={ttl}s)"
                )
            else:
                logger.debug(f"[TokenCache] Refresh for {key[:8]} detached by invalidate, not cached")
            return token
        finally:
            if self._inflight.get(key) is me:
                del self._inflight[key]

    async def _fetch(self, credential: AccountCredential) -> tuple[str, int]:
        fetcher = self._fetchers.get(credential.platform)
        if fetcher is None:
            raise AuthError(f"No token fetcher for platform '{credential.platform}'", credential.platform)

        try:
            return await fetcher(self._client(), credential)
        except AuthError as e:
            logger.error(f"[TokenCache] {credential.platform} token refresh failed: {e}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"[TokenCache] {credential.platform} token request error: {e}")
            raise AuthError(f"Token request failed: {e}", credential.platform) from e
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(f"Malformed token response: {e}", credential.platform) from e


async def call_with_token_retry(
    cache: TokenCache,
    credential: AccountCredential,
    call: Callable[[str], Awaitable[T]],
) -> T:
    """
    使用 token 调用平台 API；若平台明确拒绝 token（AuthError.token_rejected），
    invalidate 后最多重试一次。刷新本身失败不重试。
    """
    token = await cache.get_token(credential)
    try:
        return await call(token)
    except AuthError as e:
        if not e.token_rejected:
            raise
        logger.warning(
            f"[TokenCache] {credential.platform} rejected token, refreshing and retrying once: {e}"
        )
        cache.invalidate(credential.account_key)

    token = await cache.get_token(credential)
    return await call(token)


# ==================== 默认实例 ====================

_default_cache: TokenCache | None = None


def get_default_token_cache() -> TokenCache:
    """进程级默认缓存（按需创建，安全余量取自配置）"""
    global _default_cache
    if _default_cache is None:
        from ..config import settings

        _default_cache = TokenCache(safety_margin=settings.token_safety_margin_seconds)
    return _default_cache


async def get_token(credential: AccountCredential) -> str:
    return await get_default_token_cache().get_token(credential)


def invalidate_token(account_key: str) -> None:
    get_default_token_cache().invalidate(account_key)


def invalidate_all_tokens() -> None:
    get_default_token_cache().invalidate_all()
