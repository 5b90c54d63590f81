"""
Request ID 中间件
生成或透传追踪ID，并通过 contextvars 绑定到 structlog，使每条支付日志都能关联到请求
"""
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)


def resolve_client_ip(request: Request, *, trust_forwarded: bool = True) -> str:
    """客户端IP；trust_forwarded=False 时只看 TCP 对端（用于白名单校验）"""
    if trust_forwarded:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    1. 从请求头获取或生成新的 request_id
    2. 写入 request.state 与 contextvars
    3. 在响应头中返回 request_id
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        client_ip = resolve_client_ip(request)

        request.state.request_id = request_id
        request.state.client_ip = client_ip
        request_id_var.set(request_id)
        client_ip_var.set(client_ip)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def get_request_id() -> Optional[str]:
    """当前请求的 request_id（不在请求上下文中时为 None）"""
    return request_id_var.get()


def get_client_ip() -> Optional[str]:
    return client_ip_var.get()
