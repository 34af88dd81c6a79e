"""
Health check route: GET /api/health
"""

from __future__ import annotations

import time

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/api/health")
async def health(request: Request):
    """Basic health check - returns 200 if server is running."""
    registry = request.app.state.callbacks
    return {
        "status": "ok",
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "handler_attached": request.app.state.inbound_handler is not None,
        "accounts": {
            "wecom": sorted(registry.wecom),
            "dingtalk": sorted(registry.dingtalk),
            "feishu": sorted(registry.feishu),
            "qqbot": sorted(registry.qqbot),
        },
    }
