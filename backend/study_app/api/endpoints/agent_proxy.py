"""
Agent运行时的反向代理：/api/langgraph/{path} → AGENT_API_URL/{path}。

请求与响应体按流转发（支持SSE），去掉逐跳头部，并按允许列表回显CORS Origin。
"""
import logging
from typing import Dict, Optional

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from study_app.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def create_upstream_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.AGENT_PROXY_TIMEOUT_SECONDS, connect=10.0))


def resolve_cors_origin(origin: Optional[str]) -> Optional[str]:
    # 没有Origin（服务端调用、curl）时允许任意来源
    if not origin:
        return "*"
    return origin if origin in settings.AGENT_CORS_ALLOWED_ORIGINS else None


def build_cors_headers(request: Request) -> Dict[str, str]:
    headers = {
        "Vary": "Origin",
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Expose-Headers": "*",
    }
    origin = resolve_cors_origin(request.headers.get("origin"))
    if origin:
        headers["Access-Control-Allow-Origin"] = origin
    return headers


def build_upstream_headers(request: Request) -> Dict[str, str]:
    """转发给上游的请求头：去掉逐跳头部、host 和 accept-encoding"""
    headers = {
        key: value
        for key, value in request.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in ("host", "accept-encoding", "content-length")
    }
    headers["x-forwarded-proto"] = request.url.scheme
    headers["x-forwarded-host"] = request.url.netloc
    headers["x-forwarded-for"] = request.headers.get("x-forwarded-for") or "127.0.0.1"
    return headers


def build_downstream_headers(request: Request, upstream: httpx.Response) -> Dict[str, str]:
    """返回给浏览器的响应头：去掉逐跳头部和 content-length，并加上CORS头"""
    headers = {
        key: value
        for key, value in upstream.headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "content-length"
    }
    headers.update(build_cors_headers(request))
    return headers


def build_upstream_url(path: str, query: str) -> str:
    base = settings.AGENT_API_URL.rstrip("/")
    remainder = path.strip("/")
    url = f"{base}/{remainder}" if remainder else f"{base}/"
    return f"{url}?{query}" if query else url


@router.options("/{path:path}")
async def proxy_preflight(path: str, request: Request):
    headers = build_cors_headers(request)
    headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,DELETE,OPTIONS"
    headers["Access-Control-Allow-Headers"] = request.headers.get("access-control-request-headers") or "*"
    headers["Access-Control-Max-Age"] = "600"
    return Response(status_code=204, headers=headers)


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_to_agent(path: str, request: Request):
    """
    将请求原样转发到Agent运行时

    Args:
        path: /api/langgraph 之后的路径，例如 threads/123/runs/wait
        request: 原始请求

    Returns:
        StreamingResponse: 上游响应（状态码、头部、按流转发的响应体）
    """
    upstream_url = build_upstream_url(path, request.url.query)
    method = request.method.upper()
    body = None if method in ("GET", "HEAD") else request.stream()

    client = create_upstream_client()
    upstream_request = client.build_request(
        method,
        upstream_url,
        headers=build_upstream_headers(request),
        content=body,
    )
    try:
        upstream = await client.send(upstream_request, stream=True, follow_redirects=False)
    except httpx.HTTPError as e:
        await client.aclose()
        logger.error("Agent upstream unreachable: %s (%s)", upstream_url, e)
        return PlainTextResponse(
            f"Upstream unreachable: {upstream_url}\n{e}",
            status_code=502,
            headers=build_cors_headers(request),
        )

    async def close_upstream():
        await upstream.aclose()
        await client.aclose()

    return StreamingResponse(
        upstream.aiter_raw(),
        status_code=upstream.status_code,
        headers=build_downstream_headers(request, upstream),
        background=BackgroundTask(close_upstream),
    )
