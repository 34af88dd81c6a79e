"""
FastAPI callback server for openclaw-china.

提供：
- 企业微信 / 钉钉 / 飞书 / QQ 机器人 事件回调
- Health check

默认端口：18901
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI

from .. import __version__
from .routes import callbacks, health
from .routes.callbacks import CallbackRegistry, InboundHandler

logger = logging.getLogger(__name__)

API_HOST = "127.0.0.1"
API_PORT = 18901


def create_app(
    inbound_handler: InboundHandler | None = None,
    secrets: CallbackRegistry | None = None,
    settings=None,
) -> FastAPI:
    """Create the FastAPI application with all callback routes mounted."""
    if settings is None:
        from ..config import settings

    logging.getLogger("openclaw_china").setLevel(settings.log_level.upper())

    app = FastAPI(
        title="openclaw-china callbacks",
        description="Webhook callbacks for DingTalk, Feishu, WeCom and QQBot",
        version=__version__,
    )

    app.state.inbound_handler = inbound_handler
    app.state.callbacks = secrets if secrets is not None else CallbackRegistry.from_settings(settings)

    app.include_router(callbacks.router)
    app.include_router(health.router)

    return app


async def start_api_server(
    inbound_handler: InboundHandler | None = None,
    secrets: CallbackRegistry | None = None,
    host: str = API_HOST,
    port: int = API_PORT,
) -> asyncio.Task:
    """
    Start the callback server as a background asyncio task.

    Returns the server task for later cancellation.
    """
    import uvicorn

    app = create_app(inbound_handler=inbound_handler, secrets=secrets)

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
        log_config=None,  # 禁止 uvicorn 调用 dictConfig 覆盖根日志器
    )
    server = uvicorn.Server(config)

    async def _run():
        try:
            await server.serve()
        except asyncio.CancelledError:
            logger.info("[API] Callback server shutting down")
        except Exception as e:
            logger.error(f"[API] Callback server error: {e}", exc_info=True)

    task = asyncio.create_task(_run())
    logger.info(f"[API] Callback server starting on http://{host}:{port}")
    return task
