"""FastAPI relay that forwards browser-style requests to the allowed upstream APIs."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ALLOWED_HOSTS = ("dashscope.aliyuncs.com", "api.302.ai", "open.feishu.cn")
FORWARDED_REQUEST_HEADERS = ("authorization", "content-type", "x-dashscope-async")
BLOCKED_RESPONSE_HEADERS = {
    "access-control-allow-origin",
    "access-control-allow-headers",
    "access-control-allow-methods",
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
}
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
DEFAULT_ALLOWED_HEADERS = "Content-Type, Authorization, X-DashScope-Async"


class HealthResponse(BaseModel):
    status: str = "ok"
    message: str = "relay is running"


class ErrorResponse(BaseModel):
    error: str
    message: str


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, message=message).model_dump())


def create_app(transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 60.0) -> FastAPI:
    """Build the relay application; ``transport`` replaces the network in tests."""

    app = FastAPI(
        title="callnote relay",
        description="Forwarding relay for the ASR, LLM and Bitable APIs used by callnote.",
        version="0.1.0",
    )

    @app.middleware("http")
    async def add_cors_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = ",".join(m for m in PROXY_METHODS if m != "HEAD")
        response.headers["Access-Control-Allow-Headers"] = request.headers.get(
            "access-control-request-headers", DEFAULT_ALLOWED_HEADERS
        )
        response.headers["Access-Control-Max-Age"] = "600"
        return response

    @app.get("/healthz", response_model=HealthResponse)
    @app.get("/api/proxy/healthz", response_model=HealthResponse)
    async def healthcheck() -> HealthResponse:
        return HealthResponse()

    @app.api_route("/", methods=PROXY_METHODS)
    @app.api_route("/api/proxy", methods=PROXY_METHODS)
    async def forward(request: Request, url: Optional[str] = None) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        if not url:
            return _error(status.HTTP_400_BAD_REQUEST, "Missing target URL", 'Provide the "url" query parameter')

        target = urlparse(url)
        if target.scheme not in {"http", "https"} or not target.hostname:
            return _error(status.HTTP_400_BAD_REQUEST, "Invalid target URL", "The provided URL is not valid")
        if target.hostname not in ALLOWED_HOSTS:
            return _error(
                status.HTTP_403_FORBIDDEN,
                "Domain not allowed",
                f"Only {', '.join(ALLOWED_HOSTS)} are allowed",
            )

        headers = {name: request.headers[name] for name in FORWARDED_REQUEST_HEADERS if name in request.headers}
        body = None if request.method in {"GET", "HEAD"} else await request.body()
        try:
            async with httpx.AsyncClient(transport=transport, timeout=timeout) as client:
                upstream = await client.request(request.method, url, headers=headers, content=body)
        except httpx.HTTPError as exc:
            logger.error("Relay request to %s failed: %s", target.hostname, exc)
            return _error(status.HTTP_502_BAD_GATEWAY, "Proxy error", str(exc))

        relayed = {k: v for k, v in upstream.headers.items() if k.lower() not in BLOCKED_RESPONSE_HEADERS}
        return Response(content=upstream.content, status_code=upstream.status_code, headers=relayed)

    return app


app = create_app()
