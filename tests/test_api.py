import httpx
from fastapi.testclient import TestClient

from callnote.api import create_app


class Upstream:
    def __init__(self):
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(
            201,
            json={"ok": True},
            headers={"x-request-id": "abc", "access-control-allow-origin": "https://evil.example"},
        )


def test_healthz():
    client = TestClient(create_app(transport=httpx.MockTransport(Upstream())))
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_forwards_allowed_host():
    upstream = Upstream()
    client = TestClient(create_app(transport=httpx.MockTransport(upstream)))

    response = client.post(
        "/",
        params={"url": "https://dashscope.aliyuncs.com/api/v1/tasks/t1"},
        content=b'{"a": 1}',
        headers={"Authorization": "Bearer sk", "X-DashScope-Async": "enable", "Cookie": "secret=1"},
    )

    assert response.status_code == 201
    assert response.json() == {"ok": True}
    assert response.headers["x-request-id"] == "abc"
    assert response.headers["access-control-allow-origin"] == "*"
    forwarded = upstream.requests[0]
    assert str(forwarded.url) == "https://dashscope.aliyuncs.com/api/v1/tasks/t1"
    assert forwarded.headers["authorization"] == "Bearer sk"
    assert forwarded.headers["x-dashscope-async"] == "enable"
    assert "cookie" not in forwarded.headers
    assert forwarded.content == b'{"a": 1}'


def test_disallowed_host_is_refused_without_upstream_call():
    upstream = Upstream()
    client = TestClient(create_app(transport=httpx.MockTransport(upstream)))

    response = client.get("/api/proxy", params={"url": "https://example.com/steal"})

    assert response.status_code == 403
    assert response.json()["error"] == "Domain not allowed"
    assert upstream.requests == []


def test_missing_and_invalid_url():
    client = TestClient(create_app(transport=httpx.MockTransport(Upstream())))
    assert client.get("/").status_code == 400
    assert client.get("/", params={"url": "not a url"}).status_code == 400


def test_preflight_returns_no_content():
    upstream = Upstream()
    client = TestClient(create_app(transport=httpx.MockTransport(upstream)))
    response = client.options("/", params={"url": "https://api.302.ai/v1/chat/completions"})
    assert response.status_code == 204
    assert upstream.requests == []


def test_upstream_failure_is_bad_gateway():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = TestClient(create_app(transport=httpx.MockTransport(handler)))
    response = client.get("/", params={"url": "https://open.feishu.cn/open-apis/ping"})
    assert response.status_code == 502
    assert response.json()["error"] == "Proxy error"
