"""Push finished recordings into a Feishu Bitable table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .models import NOT_MENTIONED, Analysis, Recording
from .relay import NoRelayAvailableError, RelayLocator

logger = logging.getLogger(__name__)

UNCATEGORISED = "未分类"
NO_TRANSCRIPT = "无转录文本"
PROFILE_SEPARATOR = "｜"


@dataclass(slots=True)
class SyncResult:
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None


def build_record(recording: Recording) -> Dict[str, Any]:
    """Map a recording onto the Bitable column layout."""

    analysis = recording.analysis or Analysis()
    optional = analysis.optional_fields
    transcript = recording.transcription.text if recording.transcription else ""
    return {
        "业务类别": [analysis.business_type or UNCATEGORISED],
        "客户姓名": analysis.customer_info.name or NOT_MENTIONED,
        "客户画像": PROFILE_SEPARATOR.join(analysis.customer_profile),
        "跟进计划": analysis.follow_up_plan or NOT_MENTIONED,
        "需求激发": optional.demand_stimulation or NOT_MENTIONED,
        "异议处理": optional.objection_handling or NOT_MENTIONED,
        "打动客户的点": optional.customer_touch_point or NOT_MENTIONED,
        "失败复盘": optional.failure_review or NOT_MENTIONED,
        "延伸思考": optional.extended_thinking or NOT_MENTIONED,
        "转录文本": transcript or NO_TRANSCRIPT,
    }


class BitableClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        app_token: Optional[str],
        table_id: Optional[str],
        access_token: Optional[str],
        endpoint: str = "https://open.feishu.cn/open-apis",
        relay: Optional[RelayLocator] = None,
    ) -> None:
        self._client = client
        self.app_token = app_token
        self.table_id = table_id
        self._access_token = access_token
        self.endpoint = endpoint.rstrip("/")
        self._relay = relay

    def missing_setting(self) -> Optional[str]:
        if not self.app_token:
            return "app token"
        if not self.table_id:
            return "table id"
        if not self._access_token:
            return "access token"
        return None

    @property
    def records_url(self) -> str:
        return f"{self.endpoint}/bitable/v1/apps/{self.app_token}/tables/{self.table_id}/records"

    async def sync(self, recording: Recording) -> SyncResult:
        missing = self.missing_setting()
        if missing:
            return SyncResult(False, f"Bitable configuration is incomplete: missing {missing}")

        try:
            url = await self._relay.wrap(self.records_url) if self._relay is not None else self.records_url
            response = await self._client.post(
                url,
                json={"fields": build_record(recording)},
                headers={"Authorization": f"Bearer {self._access_token}", "Content-Type": "application/json"},
            )
        except (NoRelayAvailableError, httpx.HTTPError) as exc:
            logger.error("Bitable sync failed: %s", exc)
            return SyncResult(False, f"Sync failed: {exc}")

        if not response.is_success:
            logger.error("Bitable rejected record: %s %s", response.status_code, response.text[:200])
            return SyncResult(False, f"Sync failed: {response.status_code} - {response.text[:200]}")
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if isinstance(payload, dict) and payload.get("code", 0) != 0:
            return SyncResult(False, f"Sync failed: {payload.get('msg') or payload.get('code')}", data=payload)
        logger.info("Synced recording %s to Bitable", recording.id)
        return SyncResult(True, "Recording exported to Bitable", data=payload if isinstance(payload, dict) else None)
