"""Per-recording pipeline: store, upload, transcribe, analyse.

Every stage recovers from its own failures. A failed upload or ASR task falls
back to the demo transcript, and a failed LLM call falls back to the canned
analysis. The user is told what happened through notices. A recording ends up
``failed`` only when no transcript could be produced at all.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple

import httpx

from .analyzer import AnalysisClient, LlmRequestError
from .asr import AsrClient, AsrError, AsrOptions, PollProgress
from .audio import audio_format_hint, normalize_audio
from .bitable import BitableClient, SyncResult
from .config import ConfigError
from .demo import DemoProvider
from .models import (
    Analysis,
    AnalysisSource,
    AudioBlob,
    Config,
    Recording,
    RecordingStatus,
    Transcription,
)
from .parsing import AnalysisParseError
from .relay import NoRelayAvailableError, RelayCandidate, RelayLocator
from .storage import DB_PATH, BlobStore, RecordingStore, StorageError, UploadCacheIndex
from .upload import BrokerState, CacheRetryResult, UploadBroker, UploadCachedError, UploadError

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    CAPTURED = "captured"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


StageCallback = Callable[[PipelineStage], None]


@dataclass
class PipelineContext:
    """Owns the shared state of one pipeline instance.

    Broker and relay state live here rather than at module level so that
    independent contexts never observe each other's host selection.
    """

    config: Config
    client: httpx.AsyncClient
    blobs: BlobStore
    cache_index: UploadCacheIndex
    recordings: RecordingStore
    relay: Optional[RelayLocator]
    broker: UploadBroker
    asr: AsrClient
    analyzer: AnalysisClient
    bitable: BitableClient
    demo: DemoProvider

    @classmethod
    def create(
        cls,
        config: Config,
        db_path: Path = DB_PATH,
        client: Optional[httpx.AsyncClient] = None,
        demo: Optional[DemoProvider] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "PipelineContext":
        client = client or httpx.AsyncClient(timeout=config.api_timeout)
        blobs = BlobStore(db_path)
        cache_index = UploadCacheIndex(db_path)
        relay = (
            RelayLocator(
                client,
                [RelayCandidate.from_dict(item) for item in config.relays],
                hostname=config.app_hostname,
            )
            if config.use_relay
            else None
        )
        broker = UploadBroker(
            client,
            blobs=blobs,
            cache_index=cache_index,
            state=BrokerState(),
            relay=relay,
            sleep=sleep,
        )
        asr = AsrClient(
            client,
            config.dashscope_api_key,
            endpoint=config.asr_endpoint,
            model=config.asr_model,
            relay=relay,
            sleep=sleep,
        )
        analyzer = AnalysisClient(
            client,
            config.llm_api_key,
            endpoint=config.llm_endpoint,
            model=config.llm_model,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
            relay=relay,
        )
        bitable = BitableClient(
            client,
            config.feishu_app_token,
            config.feishu_table_id,
            config.feishu_access_token,
            endpoint=config.feishu_endpoint,
            relay=relay,
        )
        return cls(
            config=config,
            client=client,
            blobs=blobs,
            cache_index=cache_index,
            recordings=RecordingStore(db_path),
            relay=relay,
            broker=broker,
            asr=asr,
            analyzer=analyzer,
            bitable=bitable,
            demo=demo or DemoProvider(),
        )

    async def aclose(self) -> None:
        await self.client.aclose()


@dataclass
class PipelineOutcome:
    recording: Recording
    notices: List[str] = field(default_factory=list)


def new_recording_id(now: Optional[float] = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"{millis}-{secrets.token_hex(3)}"


def _emit(callback: Optional[StageCallback], stage: PipelineStage) -> None:
    logger.info("Pipeline stage: %s", stage.value)
    if callback is not None:
        callback(stage)


class Orchestrator:
    def __init__(self, context: PipelineContext) -> None:
        self.context = context

    async def process(
        self,
        blob: AudioBlob,
        duration_ms: int,
        title: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
        on_progress: Optional[Callable[[PollProgress], None]] = None,
    ) -> PipelineOutcome:
        ctx = self.context
        notices: List[str] = []
        created = datetime.now()
        recording_id = new_recording_id(created.timestamp())
        recording = Recording(
            id=recording_id,
            audio_ref=recording_id,
            duration_ms=duration_ms,
            created_at=created,
            title=title or f"Recording {created:%Y-%m-%d %H:%M}",
        )
        _emit(on_stage, PipelineStage.CAPTURED)

        audio = await asyncio.to_thread(normalize_audio, blob)
        try:
            await ctx.blobs.put(recording.audio_ref, audio)
        except StorageError as exc:
            logger.warning("Could not persist audio for %s: %s", recording.id, exc)
            notices.append("Audio could not be saved locally; continuing with the in-memory copy.")
        await self._save(recording, notices)

        transcription = await self._transcribe(audio, notices, on_stage, on_progress)
        if transcription is None or not transcription.text:
            recording.status = RecordingStatus.FAILED
            await self._save(recording, notices)
            _emit(on_stage, PipelineStage.FAILED)
            return PipelineOutcome(recording, notices)

        recording.transcription = transcription
        _emit(on_stage, PipelineStage.ANALYZING)
        recording.analysis = await self._analyze(transcription.text, notices)
        recording.status = RecordingStatus.COMPLETED
        await self._save(recording, notices)
        _emit(on_stage, PipelineStage.COMPLETED)
        return PipelineOutcome(recording, notices)

    async def _save(self, recording: Recording, notices: List[str]) -> None:
        try:
            await self.context.recordings.save(recording)
        except StorageError as exc:
            logger.warning("Could not save recording %s: %s", recording.id, exc)
            notices.append(f"Recording {recording.id} could not be saved: {exc}")

    def _demo_transcript(self) -> Optional[Transcription]:
        return self.context.demo.transcription() if self.context.config.demo_fallback else None

    async def _transcribe(
        self,
        audio: AudioBlob,
        notices: List[str],
        on_stage: Optional[StageCallback],
        on_progress: Optional[Callable[[PollProgress], None]],
    ) -> Optional[Transcription]:
        ctx = self.context
        if not ctx.asr.is_configured:
            logger.info("ASR is not configured; using the demo transcript")
            notices.append("Speech recognition is not configured; a demo transcript was used.")
            return self._demo_transcript()

        _emit(on_stage, PipelineStage.UPLOADING)
        try:
            url = await ctx.broker.upload(audio)
            _emit(on_stage, PipelineStage.TRANSCRIBING)
            results = await ctx.asr.recognize(
                url,
                AsrOptions(disfluency_removal=True, audio_format=audio_format_hint(audio.mime_type)),
                on_progress=on_progress,
                max_attempts=ctx.config.poll_max_attempts,
                interval=ctx.config.poll_interval,
            )
            if not results:
                raise AsrError("The transcription task returned no results")
            first = results[0]
            if not first.ok or first.transcription is None or not first.transcription.text:
                raise AsrError(first.error or "Speech recognition returned no text")
            return first.transcription
        except UploadCachedError as exc:
            logger.warning("Upload failed, audio cached as %s", exc.cache_key)
            notices.append(f"Upload failed; the audio was cached as {exc.cache_key}. Run retry-uploads later.")
        except (UploadError, AsrError, ConfigError, NoRelayAvailableError, httpx.HTTPError) as exc:
            logger.warning("Transcription failed: %s", exc)
            notices.append(f"Transcription failed ({exc}); a demo transcript was used.")
        return self._demo_transcript()

    async def _analyze(self, transcript: str, notices: List[str]) -> Analysis:
        ctx = self.context
        if not ctx.analyzer.is_configured:
            logger.info("LLM is not configured; using the demo analysis")
            return ctx.demo.analysis(AnalysisSource.DEMO)
        try:
            return await ctx.analyzer.analyze(transcript)
        except (LlmRequestError, AnalysisParseError, ConfigError, NoRelayAvailableError, httpx.HTTPError) as exc:
            logger.warning("Analysis failed, using placeholder analysis: %s", exc)
            notices.append(f"Analysis failed ({exc}); a placeholder analysis was used.")
            return ctx.demo.analysis(AnalysisSource.FALLBACK)

    async def delete_recording(self, recording_id: str) -> None:
        await self.context.recordings.delete(recording_id, blobs=self.context.blobs)

    async def retry_pending_uploads(self) -> Tuple[List[CacheRetryResult], List[str]]:
        results = await self.context.broker.retry_from_cache()
        notices = []
        for result in results:
            if result.success:
                notices.append(f"{result.filename} uploaded: {result.url}")
            else:
                notices.append(f"{result.filename} is still pending: {result.error}")
        if not results:
            notices.append("No cached uploads are waiting.")
        return results, notices

    async def sync_recording(self, recording_id: str) -> SyncResult:
        try:
            recording = await self.context.recordings.get(recording_id)
        except StorageError as exc:
            return SyncResult(False, str(exc))
        if not recording.has_transcript:
            return SyncResult(False, f"Recording {recording_id} has no transcript to sync")
        return await self.context.bitable.sync(recording)
