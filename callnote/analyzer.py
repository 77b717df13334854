"""Sales-call analysis through an OpenAI-compatible chat-completions gateway."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import ConfigurationMissingError
from .models import Analysis
from .parsing import parse_analysis_response
from .relay import RelayLocator

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """你是一位资深的银行营销专家和培训师，请对以下银行客户经理的营销案例录音转录文本进行专业分析和提炼。

**转录文本：**
{transcript}

**分析要求：**
请严格按照以下JSON格式返回分析结果，不要添加任何其他文字说明：

{{
  "summary": {{
    "businessType": "业务类别（从以下选择：盘户计划、面访跟踪、优秀经验、失败复盘、其他）",
    "customerInfo": "客户姓名或称呼（如张总、李女士等，若未提及则填写'未提及'）",
    "followUpPlan": "待跟进计划（根据语音内容提炼具体的跟进行动，若没有提及则填写'未提及'）"
  }},
  "insights": {{
    "customerProfile": ["客户画像标签数组，如：中年、已婚、企业主、孩子小学等"],
    "demandStimulation": "需求激发亮点（分析客户需求激发过程中的成功做法和技巧）",
    "objectionHandling": "异议处理亮点（分析异议处理过程中的成功做法和技巧）",
    "customerTouchPoint": "打动客户的点（分析促使客户态度转变的关键节点和原因）",
    "failureReview": "失败复盘（若是失败案例，分析主要失败原因；若非失败案例则填写'未提及'）",
    "extendedThinking": "延伸思考（基于本案例提出深度洞察、可推广的方法论、营销技巧建议或行动提示）"
  }}
}}

**注意事项：**
1. 严格按照JSON格式返回，确保格式正确
2. 如果某个字段在转录文本中没有相关信息，请填写"未提及"
3. 客户画像标签要简洁明了，每个标签2-4个字
4. 延伸思考要有深度，结合专业理论提供实用建议
5. 保持客观专业的分析态度"""


class LlmRequestError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def build_analysis_prompt(transcript: str) -> str:
    return PROMPT_TEMPLATE.format(transcript=transcript)


class AnalysisClient:
    """Send a transcript to the LLM gateway and parse the structured reply."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str],
        endpoint: str = "https://api.302.ai/v1/chat/completions",
        model: str = "gemini-2.5-flash",
        temperature: float = 0.4,
        max_tokens: int = 4096,
        relay: Optional[RelayLocator] = None,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._relay = relay

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def request_body(self, transcript: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": build_analysis_prompt(transcript)}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
            "stream": False,
        }

    async def complete(self, transcript: str) -> Dict[str, Any]:
        if not self._api_key:
            raise ConfigurationMissingError("LLM API key is not configured")
        url = await self._relay.wrap(self.endpoint) if self._relay is not None else self.endpoint
        logger.info("Requesting analysis from %s (%d characters)", self.model, len(transcript))
        response = await self._client.post(
            url,
            json=self.request_body(transcript),
            headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
        )
        if not response.is_success:
            raise LlmRequestError(
                f"LLM request failed: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise LlmRequestError("LLM gateway returned invalid JSON") from exc

        choices = payload.get("choices") if isinstance(payload, dict) else None
        if choices and isinstance(choices[0], dict) and choices[0].get("finish_reason") == "length":
            logger.warning("LLM output was truncated by max_tokens=%d", self.max_tokens)
        return payload

    async def analyze(self, transcript: str) -> Analysis:
        return parse_analysis_response(await self.complete(transcript))
