import asyncio
import json
from datetime import datetime

import httpx

from callnote.bitable import BitableClient, build_record
from callnote.demo import DemoProvider
from callnote.models import Recording


def _recording():
    return DemoProvider().recordings()[0]


def test_build_record_maps_columns():
    record = build_record(_recording())

    assert record["业务类别"] == ["面访跟踪"]
    assert record["客户姓名"] == "张总"
    assert record["客户画像"] == "中年｜已婚｜企业主｜孩子中学｜制造业"
    assert record["失败复盘"] == "未提及"
    assert record["转录文本"].startswith("今天我拜访了张总")


def test_build_record_defaults_without_analysis():
    recording = Recording(id="r", audio_ref="r", duration_ms=0, created_at=datetime(2024, 1, 1))
    record = build_record(recording)
    assert record["业务类别"] == ["其他"]
    assert record["转录文本"] == "无转录文本"


def test_incomplete_configuration_is_reported_without_request():
    def handler(request):
        raise AssertionError("No request expected")

    client = BitableClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "app", None, "token")
    result = asyncio.run(client.sync(_recording()))
    assert not result.success
    assert "table id" in result.message


def test_sync_posts_fields():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"code": 0, "data": {"record": {"record_id": "rec1"}}})

    client = BitableClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "app1", "tbl1", "t-123")
    result = asyncio.run(client.sync(_recording()))

    assert result.success
    assert seen[0].url.path == "/open-apis/bitable/v1/apps/app1/tables/tbl1/records"
    assert seen[0].headers["Authorization"] == "Bearer t-123"
    assert json.loads(seen[0].content)["fields"]["客户姓名"] == "张总"


def test_sync_reports_api_error_code():
    def handler(request):
        return httpx.Response(200, json={"code": 1254045, "msg": "FieldNameNotFound"})

    client = BitableClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), "app1", "tbl1", "t-123")
    result = asyncio.run(client.sync(_recording()))
    assert not result.success
    assert "FieldNameNotFound" in result.message
