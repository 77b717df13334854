import asyncio
import json

import httpx

from callnote.analyzer import AnalysisClient, LlmRequestError, build_analysis_prompt
from callnote.config import ConfigurationMissingError
from callnote.models import AnalysisSource
from callnote.relay import RelayCandidate, RelayLocator

REPLY = {
    "summary": {"businessType": "盘户计划", "customerInfo": "李女士", "followUpPlan": "本周电话回访"},
    "insights": {"customerProfile": ["青年", "教师"]},
}


def _completion(content, finish_reason="stop"):
    return {"choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}]}


def test_prompt_embeds_transcript():
    prompt = build_analysis_prompt("客户说下周再聊")
    assert "客户说下周再聊" in prompt
    assert '"businessType"' in prompt


def test_analyze_posts_json_mode_request():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_completion(json.dumps(REPLY, ensure_ascii=False)))

    client = AnalysisClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "sk-llm")
    analysis = asyncio.run(client.analyze("转录文本"))

    assert analysis.business_type == "盘户计划"
    assert analysis.customer_profile == ["青年", "教师"]
    assert analysis.provenance is AnalysisSource.REAL
    body = json.loads(seen[0].content)
    assert body["model"] == "gemini-2.5-flash"
    assert body["response_format"] == {"type": "json_object"}
    assert body["stream"] is False
    assert seen[0].headers["Authorization"] == "Bearer sk-llm"


def test_requests_go_through_relay():
    seen = []

    def handler(request):
        seen.append(request.url)
        if request.url.path.endswith("/healthz"):
            return httpx.Response(200)
        return httpx.Response(200, json=_completion(json.dumps(REPLY, ensure_ascii=False)))

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    relay = RelayLocator(http, [RelayCandidate("http://relay.local:3001", "local", 1)])
    client = AnalysisClient(http, "sk-llm", relay=relay)
    asyncio.run(client.analyze("转录文本"))

    assert seen[-1].host == "relay.local"
    assert seen[-1].params["url"] == "https://api.302.ai/v1/chat/completions"


def test_missing_key_raises_before_request():
    def handler(request):
        raise AssertionError("No request expected")

    client = AnalysisClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), None)
    try:
        asyncio.run(client.analyze("text"))
    except ConfigurationMissingError:
        pass
    else:
        raise AssertionError("Expected ConfigurationMissingError")


def test_http_error_raises_llm_request_error():
    def handler(request):
        return httpx.Response(429, text="rate limited")

    client = AnalysisClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "sk-llm")
    try:
        asyncio.run(client.analyze("text"))
    except LlmRequestError as exc:
        assert exc.status_code == 429
    else:
        raise AssertionError("Expected LlmRequestError")
