"""
TokenCache 单元测试

覆盖:
- 缓存命中 / 安全余量过期
- 并发单飞刷新
- invalidate / invalidate_all
- 刷新失败的错误归一化
- call_with_token_retry 的一次重试
- 各平台 fetcher 的请求与响应解析
"""

import asyncio

import httpx
import pytest

from openclaw_china.channels.token_cache import (
    AccountCredential,
    TokenCache,
    call_with_token_retry,
    fetch_dingtalk_token,
    fetch_feishu_token,
    fetch_qqbot_token,
    fetch_wecom_app_token,
    make_account_key,
)
from openclaw_china.core.errors import AuthError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingFetcher:
    """按调用次数返回 tok-1, tok-2, ...；可选地等待 gate 再返回"""

    def __init__(self, ttl: int = 7200, gate: asyncio.Event | None = None):
        self.ttl = ttl
        self.gate = gate
        self.calls = 0

    async def __call__(self, client, credential):
        self.calls += 1
        n = self.calls
        if self.gate is not None:
            await self.gate.wait()
        return f"tok-{n}", self.ttl


CRED = AccountCredential("qqbot", "app-1", "s3cret")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def make_cache(clock):
    caches = []

    def _make(fetcher, **kwargs):
        cache = TokenCache(fetchers={"qqbot": fetcher}, clock=clock, **kwargs)
        caches.append(cache)
        return cache

    yield _make
    for cache in caches:
        await cache.aclose()


class TestAccountCredential:

    def test_account_key_is_stable_and_opaque(self):
        key = make_account_key("qqbot", "app-1")
        assert key == CRED.account_key
        assert len(key) == 32
        assert "app-1" not in key

    def test_account_key_differs_per_platform(self):
        assert make_account_key("qqbot", "x") != make_account_key("dingtalk", "x")

    def test_repr_hides_secret(self):
        assert "s3cret" not in repr(CRED)


class TestTokenCaching:

    async def test_second_call_hits_cache(self, make_cache):
        fetcher = CountingFetcher()
        cache = make_cache(fetcher)
        assert await cache.get_token(CRED) == "tok-1"
        assert await cache.get_token(CRED) == "tok-1"
        assert fetcher.calls == 1
        assert len(cache) == 1

    async def test_expires_safety_margin_early(self, make_cache, clock):
        fetcher = CountingFetcher(ttl=7200)
        cache = make_cache(fetcher, safety_margin=60)
        await cache.get_token(CRED)

        clock.now += 7200 - 61
        assert await cache.get_token(CRED) == "tok-1"

        clock.now += 1
        assert await cache.get_token(CRED) == "tok-2"
        assert fetcher.calls == 2

    async def test_ttl_shorter_than_margin_is_not_reused(self, make_cache):
        fetcher = CountingFetcher(ttl=30)
        cache = make_cache(fetcher, safety_margin=60)
        assert await cache.get_token(CRED) == "tok-1"
        assert await cache.get_token(CRED) == "tok-2"

    async def test_peek_does_not_refresh(self, make_cache):
        fetcher = CountingFetcher()
        cache = make_cache(fetcher)
        assert cache.peek(CRED.account_key) is None
        await cache.get_token(CRED)
        entry = cache.peek(CRED.account_key)
        assert entry.value == "tok-1"
        assert fetcher.calls == 1


class TestSingleFlight:

    async def test_concurrent_callers_share_one_refresh(self, make_cache):
        gate = asyncio.Event()
        fetcher = CountingFetcher(gate=gate)
        cache = make_cache(fetcher)

        waiters = [asyncio.create_task(cache.get_token(CRED)) for _ in range(10)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*waiters)

        assert results == ["tok-1"] * 10
        assert fetcher.calls == 1

    async def test_cancelled_waiter_does_not_cancel_refresh(self, make_cache):
        gate = asyncio.Event()
        fetcher = CountingFetcher(gate=gate)
        cache = make_cache(fetcher)

        first = asyncio.create_task(cache.get_token(CRED))
        second = asyncio.create_task(cache.get_token(CRED))
        await asyncio.sleep(0)
        first.cancel()
        gate.set()

        assert await second == "tok-1"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert fetcher.calls == 1

    async def test_failed_refresh_propagates_to_all_and_is_not_cached(self, make_cache):
        calls = 0

        async def failing(client, credential):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            raise AuthError("bad secret", "qqbot", status=401)

        cache = make_cache(failing)
        results = await asyncio.gather(
            cache.get_token(CRED), cache.get_token(CRED), return_exceptions=True
        )
        assert all(isinstance(r, AuthError) for r in results)
        assert calls == 1
        assert len(cache) == 0

        with pytest.raises(AuthError):
            await cache.get_token(CRED)
        assert calls == 2


class TestInvalidate:

    async def test_invalidate_forces_refresh(self, make_cache):
        fetcher = CountingFetcher()
        cache = make_cache(fetcher)
        await cache.get_token(CRED)
        cache.invalidate(CRED.account_key)
        assert await cache.get_token(CRED) == "tok-2"
        assert fetcher.calls == 2

    async def test_invalidate_during_refresh_does_not_cache_stale_result(self, make_cache):
        gate = asyncio.Event()
        fetcher = CountingFetcher(gate=gate)
        cache = make_cache(fetcher)

        pending = asyncio.create_task(cache.get_token(CRED))
        await asyncio.sleep(0)
        cache.invalidate(CRED.account_key)
        gate.set()

        assert await pending == "tok-1"
        assert cache.peek(CRED.account_key) is None
        assert await cache.get_token(CRED) == "tok-2"

    async def test_invalidate_all(self, make_cache):
        fetcher = CountingFetcher()
        cache = make_cache(fetcher)
        other = AccountCredential("qqbot", "app-2", "x")
        await cache.get_token(CRED)
        await cache.get_token(other)
        assert len(cache) == 2

        cache.invalidate_all()
        assert len(cache) == 0


class TestFetchErrors:

    async def test_unknown_platform(self, make_cache):
        cache = make_cache(CountingFetcher())
        with pytest.raises(AuthError, match="No token fetcher"):
            await cache.get_token(AccountCredential("nowhere", "a", "b"))

    async def test_transport_error_becomes_auth_error(self, make_cache):
        async def broken(client, credential):
            raise httpx.ConnectError("connection refused")

        cache = make_cache(broken)
        with pytest.raises(AuthError, match="Token request failed"):
            await cache.get_token(CRED)

    async def test_malformed_response_becomes_auth_error(self, make_cache):
        async def malformed(client, credential):
            return "tok", int("not-a-number")

        cache = make_cache(malformed)
        with pytest.raises(AuthError, match="Malformed"):
            await cache.get_token(CRED)


class TestCallWithTokenRetry:

    async def test_retries_once_after_rejection(self, make_cache):
        fetcher = CountingFetcher()
        cache = make_cache(fetcher)
        seen = []

        async def call(token):
            seen.append(token)
            if len(seen) == 1:
                raise AuthError("expired", "qqbot", status=401, token_rejected=True)
            return "ok"

        assert await call_with_token_retry(cache, CRED, call) == "ok"
        assert seen == ["tok-1", "tok-2"]

    async def test_gives_up_after_second_rejection(self, make_cache):
        cache = make_cache(CountingFetcher())

        async def call(token):
            raise AuthError("expired", "qqbot", status=401, token_rejected=True)

        with pytest.raises(AuthError):
            await call_with_token_retry(cache, CRED, call)

    async def test_other_auth_errors_are_not_retried(self, make_cache):
        fetcher = CountingFetcher()
        cache = make_cache(fetcher)
        attempts = 0

        async def call(token):
            nonlocal attempts
            attempts += 1
            raise AuthError("forbidden", "qqbot", status=403)

        with pytest.raises(AuthError):
            await call_with_token_retry(cache, CRED, call)
        assert attempts == 1
        assert fetcher.calls == 1


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestPlatformFetchers:

    async def test_qqbot(self):
        def handler(request):
            assert request.url.path == "/app/getAppAccessToken"
            assert b'"appId":"app-1"' in request.content.replace(b" ", b"")
            return httpx.Response(200, json={"access_token": "qq-tok", "expires_in": "7200"})

        async with _client(handler) as client:
            assert await fetch_qqbot_token(client, CRED) == ("qq-tok", 7200)

    async def test_qqbot_missing_token(self):
        def handler(request):
            return httpx.Response(200, json={"code": 100016, "message": "invalid appid"})

        async with _client(handler) as client:
            with pytest.raises(AuthError) as exc:
                await fetch_qqbot_token(client, CRED)
        assert exc.value.status == 100016

    async def test_dingtalk(self):
        def handler(request):
            assert request.url.params["appkey"] == "ding-app"
            assert request.url.params["appsecret"] == "ding-secret"
            return httpx.Response(200, json={"errcode": 0, "access_token": "dt", "expires_in": 7200})

        cred = AccountCredential("dingtalk", "ding-app", "ding-secret")
        async with _client(handler) as client:
            assert await fetch_dingtalk_token(client, cred) == ("dt", 7200)

    async def test_wecom_errcode(self):
        def handler(request):
            return httpx.Response(200, json={"errcode": 40013, "errmsg": "invalid corpid"})

        cred = AccountCredential("wecom-app", "corp", "secret")
        async with _client(handler) as client:
            with pytest.raises(AuthError) as exc:
                await fetch_wecom_app_token(client, cred)
        assert exc.value.status == 40013
        assert "invalid corpid" in exc.value.body

    async def test_feishu(self):
        def handler(request):
            return httpx.Response(
                200, json={"code": 0, "tenant_access_token": "fs", "expire": 3600}
            )

        cred = AccountCredential("feishu", "cli_a", "secret")
        async with _client(handler) as client:
            assert await fetch_feishu_token(client, cred) == ("fs", 3600)

    async def test_http_error_status(self):
        def handler(request):
            return httpx.Response(500, text="upstream down")

        async with _client(handler) as client:
            with pytest.raises(AuthError) as exc:
                await fetch_qqbot_token(client, CRED)
        assert exc.value.status == 500
        assert exc.value.body == "upstream down"
