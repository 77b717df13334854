import asyncio
import json

import httpx
import numpy as np

from callnote.audio import encode_wav
from callnote.models import AnalysisSource, AudioBlob, Config, RecordingStatus, TranscriptSource
from callnote.pipeline import Orchestrator, PipelineContext, PipelineStage

WAV = AudioBlob(encode_wav(np.zeros(1600, dtype=np.float32)), "audio/wav")

TRANSCRIPT_DOC = {"transcripts": [{"text": "李女士说下周再约。", "sentences": []}]}
LLM_REPLY = json.dumps({"summary": {"businessType": "盘户计划", "customerInfo": "李女士", "followUpPlan": "下周再约"}})


def fake_services(task_status="SUCCEEDED", upload_ok=True, llm_status=200):
    requests = []

    def handler(request):
        requests.append(request)
        host = request.url.host
        if host == "tmpfiles.org":
            if request.method == "HEAD":
                return httpx.Response(200, headers={"content-type": "audio/wav"})
            if not upload_ok:
                return httpx.Response(503)
            return httpx.Response(200, json={"status": "success", "data": {"url": "https://tmpfiles.org/1/a.wav"}})
        if host == "dashscope.aliyuncs.com":
            if request.url.path.endswith("/transcription"):
                return httpx.Response(200, json={"output": {"task_id": "t1", "task_status": "PENDING"}})
            results = [
                {
                    "file_url": "https://tmpfiles.org/dl/1/a.wav",
                    "subtask_status": task_status,
                    "transcription_url": "https://result.example/t1.json",
                }
            ]
            return httpx.Response(200, json={"output": {"task_id": "t1", "task_status": task_status, "results": results}})
        if host == "result.example":
            return httpx.Response(200, json=TRANSCRIPT_DOC)
        if host == "api.302.ai":
            if llm_status != 200:
                return httpx.Response(llm_status, text="upstream error")
            return httpx.Response(200, json={"choices": [{"message": {"content": LLM_REPLY}}]})
        return httpx.Response(503, text="unavailable")

    return handler, requests


async def _no_sleep(delay):
    return None


def _context(tmp_path, handler, **overrides):
    settings = {
        "dashscope_api_key": "sk-asr",
        "llm_api_key": "sk-llm",
        "use_relay": False,
        "poll_interval": 0.0,
        "poll_max_attempts": 3,
    }
    settings.update(overrides)
    return PipelineContext.create(
        Config(**settings),
        db_path=tmp_path / "callnote.db",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=_no_sleep,
    )


def _process(context, **kwargs):
    async def run():
        try:
            return await Orchestrator(context).process(WAV, 100, **kwargs)
        finally:
            await context.aclose()

    return asyncio.run(run())


def test_successful_run_uses_real_transcript_and_analysis(tmp_path):
    handler, _ = fake_services()
    context = _context(tmp_path, handler)
    stages = []

    outcome = _process(context, title="李女士", on_stage=stages.append)

    recording = outcome.recording
    assert recording.status is RecordingStatus.COMPLETED
    assert recording.transcription.text == "李女士说下周再约。"
    assert recording.transcription.provenance is TranscriptSource.ASR
    assert recording.analysis.business_type == "盘户计划"
    assert recording.analysis.provenance is AnalysisSource.REAL
    assert outcome.notices == []
    assert stages == [
        PipelineStage.CAPTURED,
        PipelineStage.UPLOADING,
        PipelineStage.TRANSCRIBING,
        PipelineStage.ANALYZING,
        PipelineStage.COMPLETED,
    ]

    stored = asyncio.run(context.recordings.get(recording.id))
    assert stored.analysis == recording.analysis
    assert asyncio.run(context.blobs.get(recording.audio_ref)).data == WAV.data


def test_failed_asr_task_falls_back_to_demo_transcript(tmp_path):
    handler, _ = fake_services(task_status="FAILED")
    context = _context(tmp_path, handler, llm_api_key=None)

    outcome = _process(context)

    recording = outcome.recording
    assert recording.status is RecordingStatus.COMPLETED
    assert recording.transcription.provenance is TranscriptSource.DEMO
    assert recording.analysis.provenance is AnalysisSource.DEMO
    assert any("Transcription failed" in notice for notice in outcome.notices)


def test_failed_asr_without_demo_fallback_marks_recording_failed(tmp_path):
    handler, _ = fake_services(task_status="FAILED")
    context = _context(tmp_path, handler, demo_fallback=False)

    outcome = _process(context)

    assert outcome.recording.status is RecordingStatus.FAILED
    assert outcome.recording.analysis is None


def test_unconfigured_asr_makes_no_network_calls(tmp_path):
    handler, requests = fake_services()
    context = _context(tmp_path, handler, dashscope_api_key=None, llm_api_key=None)

    outcome = _process(context)

    assert outcome.recording.status is RecordingStatus.COMPLETED
    assert outcome.recording.transcription.provenance is TranscriptSource.DEMO
    assert requests == []


def test_llm_failure_uses_placeholder_analysis(tmp_path):
    handler, _ = fake_services(llm_status=500)
    context = _context(tmp_path, handler)

    outcome = _process(context)

    assert outcome.recording.status is RecordingStatus.COMPLETED
    assert outcome.recording.analysis.provenance is AnalysisSource.FALLBACK
    assert any("Analysis failed" in notice for notice in outcome.notices)


def test_upload_failure_caches_audio_for_retry(tmp_path):
    handler, _ = fake_services(upload_ok=False)
    context = _context(tmp_path, handler)

    outcome = _process(context)

    assert outcome.recording.transcription.provenance is TranscriptSource.DEMO
    assert any("cached" in notice for notice in outcome.notices)
    assert len(asyncio.run(context.cache_index.list())) == 1


def test_retry_pending_uploads_reports_results(tmp_path):
    handler, _ = fake_services(upload_ok=False)
    _process(_context(tmp_path, handler))

    handler, _ = fake_services()
    context = _context(tmp_path, handler)

    async def run():
        try:
            return await Orchestrator(context).retry_pending_uploads()
        finally:
            await context.aclose()

    results, notices = asyncio.run(run())
    assert [r.success for r in results] == [True]
    assert "uploaded" in notices[0]
    assert asyncio.run(context.cache_index.list()) == []


def test_sync_requires_transcript(tmp_path):
    handler, _ = fake_services(task_status="FAILED")
    context = _context(
        tmp_path,
        handler,
        demo_fallback=False,
        feishu_app_token="app",
        feishu_table_id="tbl",
        feishu_access_token="tok",
    )
    recording = _process(context).recording

    context = _context(tmp_path, handler)

    async def run():
        try:
            return await Orchestrator(context).sync_recording(recording.id)
        finally:
            await context.aclose()

    result = asyncio.run(run())
    assert not result.success
    assert "no transcript" in result.message


def test_delete_recording_removes_audio(tmp_path):
    handler, _ = fake_services()
    context = _context(tmp_path, handler)
    recording = _process(context).recording

    context = _context(tmp_path, handler)

    async def run():
        try:
            await Orchestrator(context).delete_recording(recording.id)
        finally:
            await context.aclose()

    asyncio.run(run())
    assert asyncio.run(context.recordings.list()) == []
    assert asyncio.run(context.blobs.get(recording.audio_ref)) is None


def test_transcript_with_null_timestamps_still_completes(tmp_path, monkeypatch):
    monkeypatch.setitem(
        TRANSCRIPT_DOC,
        "transcripts",
        [{"text": "李女士说下周再约。", "sentences": [{"begin_time": None, "end_time": None, "text": "李女士说下周再约。"}]}],
    )
    handler, _ = fake_services()
    outcome = _process(_context(tmp_path, handler))

    assert outcome.recording.status is RecordingStatus.COMPLETED
    assert outcome.recording.transcription.provenance is TranscriptSource.ASR
    assert outcome.recording.transcription.segments[0].start_time == 0


def test_malformed_poll_replies_fall_back_to_demo_transcript(tmp_path):
    inner, _ = fake_services()

    def handler(request):
        if request.url.path.startswith("/api/v1/tasks/"):
            return httpx.Response(200, json=["gateway busy"])
        return inner(request)

    outcome = _process(_context(tmp_path, handler, llm_api_key=None))

    assert outcome.recording.status is RecordingStatus.COMPLETED
    assert outcome.recording.transcription.provenance is TranscriptSource.DEMO
    assert any("Transcription failed" in notice for notice in outcome.notices)
