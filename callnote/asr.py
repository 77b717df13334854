"""Client for the DashScope Paraformer asynchronous transcription API.

Transcription is a submit-then-poll protocol: :meth:`AsrClient.submit` creates a
task, :meth:`AsrClient.await_completion` polls it until it reaches a terminal
state, and :meth:`AsrClient.recognize` ties both together and fetches the
detailed transcript for every file in the batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from .config import ConfigurationMissingError
from .models import Segment, Transcription, TranscriptSource, Word
from .relay import NoRelayAvailableError, RelayLocator

logger = logging.getLogger(__name__)

# Paraformer does not report a per-sentence confidence; this is a fixed estimate.
DEFAULT_CONFIDENCE = 0.95


class AsrError(RuntimeError):
    """Base class for transcription failures."""


class InvalidAudioUrlError(AsrError):
    pass


class AsrRequestError(AsrError):
    """The service rejected a request or returned an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AsrTaskFailedError(AsrError):
    def __init__(self, task_id: str, results: Any) -> None:
        super().__init__(f"Transcription task {task_id} failed: {results!r}")
        self.task_id = task_id
        self.results = results


class TranscriptionTimeoutError(AsrError):
    pass


class TranscriptionCancelledError(AsrError):
    pass


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(slots=True)
class AsrOptions:
    language_hints: List[str] = field(default_factory=lambda: ["zh", "en"])
    timestamp_alignment: bool = True
    diarization: bool = False
    speaker_count: Optional[int] = None
    disfluency_removal: bool = False
    audio_format: Optional[str] = None
    vocabulary_id: Optional[str] = None
    channel_ids: List[int] = field(default_factory=lambda: [0])

    def to_parameters(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "channel_id": list(self.channel_ids),
            "language_hints": list(self.language_hints),
            "disfluency_removal_enabled": self.disfluency_removal,
            "timestamp_alignment_enabled": self.timestamp_alignment,
            "diarization_enabled": self.diarization,
        }
        if self.speaker_count:
            params["speaker_count"] = self.speaker_count
        if self.audio_format:
            params["audio_format"] = self.audio_format
        if self.vocabulary_id:
            params["vocabulary_id"] = self.vocabulary_id
        return params


@dataclass(slots=True)
class SubmitResult:
    task_id: str
    status: TaskStatus
    request_id: Optional[str] = None


@dataclass(slots=True)
class TaskSnapshot:
    task_id: str
    status: TaskStatus
    submit_time: Optional[str] = None
    end_time: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Optional[Dict[str, Any]] = None
    usage: Optional[Dict[str, Any]] = None
    request_id: Optional[str] = None


@dataclass(slots=True)
class PollProgress:
    """Reported after every poll, including polls that failed."""

    attempt: int
    max_attempts: int
    status: Optional[TaskStatus] = None
    error: Optional[str] = None
    snapshot: Optional[TaskSnapshot] = None


@dataclass(slots=True)
class RecognitionResult:
    file_url: str
    status: str  # "success" or "failed"
    transcription: Optional[Transcription] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success" and self.transcription is not None


def is_valid_audio_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _seconds(milliseconds: Any) -> float:
    return (milliseconds or 0) / 1000


def normalise_transcription(payload: Dict[str, Any]) -> Transcription:
    """Convert a Paraformer transcription document into a :class:`Transcription`.

    Missing timestamps count as zero. A document of the wrong shape raises
    :class:`AsrRequestError`.
    """

    try:
        return _normalise(payload)
    except (AttributeError, TypeError, IndexError) as exc:
        raise AsrRequestError(f"Malformed transcription document: {exc}") from exc


def _normalise(payload: Dict[str, Any]) -> Transcription:
    transcripts = payload.get("transcripts") or []
    if not transcripts:
        raise AsrRequestError("Transcription document contains no transcripts")
    transcript = transcripts[0]
    properties = payload.get("properties") or {}

    segments = tuple(
        Segment(
            text=sentence.get("text") or "",
            start_time=_seconds(sentence.get("begin_time")),
            end_time=_seconds(sentence.get("end_time")),
            confidence=DEFAULT_CONFIDENCE,
            speaker_id=sentence.get("speaker_id") or 0,
            words=tuple(
                Word(
                    text=word.get("text") or "",
                    start_time=_seconds(word.get("begin_time")),
                    end_time=_seconds(word.get("end_time")),
                    punctuation=word.get("punctuation") or "",
                )
                for word in sentence.get("words") or []
            ),
        )
        for sentence in transcript.get("sentences") or []
    )
    return Transcription(
        text=transcript.get("text") or "",
        confidence=DEFAULT_CONFIDENCE,
        segments=segments,
        duration_ms=properties.get("original_duration_in_milliseconds"),
        audio_format=properties.get("audio_format"),
        sampling_rate=properties.get("original_sampling_rate"),
        provenance=TranscriptSource.ASR,
    )


def _parse_status(value: Any) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError as exc:
        raise AsrRequestError(f"Unknown task status: {value!r}") from exc


class AsrClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str],
        endpoint: str = "https://dashscope.aliyuncs.com/api/v1",
        model: str = "paraformer-v2",
        relay: Optional[RelayLocator] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self._relay = relay
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _require_key(self) -> str:
        if not self._api_key:
            raise ConfigurationMissingError("DashScope API key is not configured")
        return self._api_key

    async def _post(self, path: str, payload: Optional[Dict[str, Any]] = None, **headers: str) -> Dict[str, Any]:
        api_key = self._require_key()
        target = f"{self.endpoint}{path}"
        url = await self._relay.wrap(target) if self._relay is not None else target
        response = await self._client.post(
            url,
            json=payload,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json", **headers},
        )
        if not response.is_success:
            message = response.reason_phrase
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error") or message
            raise AsrRequestError(f"{path} failed: {message}", status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise AsrRequestError(f"{path} returned invalid JSON") from exc
        if not isinstance(data, dict) or not isinstance(data.get("output") or {}, dict):
            raise AsrRequestError(f"{path} returned an unexpected reply: {data!r:.80}")
        return data

    async def submit(self, audio_urls: Sequence[str] | str, options: Optional[AsrOptions] = None) -> SubmitResult:
        self._require_key()
        urls = [audio_urls] if isinstance(audio_urls, str) else list(audio_urls)
        if not urls:
            raise InvalidAudioUrlError("At least one audio URL is required")
        for url in urls:
            if not is_valid_audio_url(url):
                raise InvalidAudioUrlError(f"Invalid audio URL: {url}")

        options = options or AsrOptions()
        payload = {
            "model": self.model,
            "input": {"file_urls": urls},
            "parameters": options.to_parameters(),
        }
        data = await self._post("/services/audio/asr/transcription", payload, **{"X-DashScope-Async": "enable"})
        output = data.get("output") or {}
        if "task_id" not in output:
            raise AsrRequestError("Submit response is missing a task id")
        result = SubmitResult(
            task_id=output["task_id"],
            status=_parse_status(output.get("task_status", TaskStatus.PENDING.value)),
            request_id=data.get("request_id"),
        )
        logger.info("Submitted transcription task %s", result.task_id)
        return result

    async def poll(self, task_id: str) -> TaskSnapshot:
        if not task_id:
            raise AsrRequestError("Task id must not be empty")
        data = await self._post(f"/tasks/{task_id}")
        output = data.get("output") or {}
        return TaskSnapshot(
            task_id=output.get("task_id", task_id),
            status=_parse_status(output.get("task_status")),
            submit_time=output.get("submit_time"),
            end_time=output.get("end_time"),
            results=output["results"] if isinstance(output.get("results"), list) else [],
            metrics=output.get("task_metrics"),
            usage=data.get("usage"),
            request_id=data.get("request_id"),
        )

    async def await_completion(
        self,
        task_id: str,
        max_attempts: int = 60,
        interval: float = 2.0,
        on_progress: Optional[Callable[[PollProgress], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TaskSnapshot:
        """Poll ``task_id`` until it succeeds, fails or the attempt budget runs out.

        Every poll counts toward ``max_attempts``, including polls that raised.
        Once the budget is spent no further request is made.
        """

        attempt = 0
        while attempt < max_attempts:
            if cancel_event is not None and cancel_event.is_set():
                raise TranscriptionCancelledError(f"Polling of task {task_id} was cancelled")
            attempt += 1
            try:
                snapshot = await self.poll(task_id)
            except ConfigurationMissingError:
                raise
            except (httpx.HTTPError, AsrRequestError, NoRelayAvailableError) as exc:
                logger.warning("Poll %d/%d for task %s failed: %s", attempt, max_attempts, task_id, exc)
                _report(on_progress, PollProgress(attempt, max_attempts, error=str(exc)))
            else:
                _report(on_progress, PollProgress(attempt, max_attempts, status=snapshot.status, snapshot=snapshot))
                if snapshot.status is TaskStatus.SUCCEEDED:
                    return snapshot
                if snapshot.status is TaskStatus.FAILED:
                    raise AsrTaskFailedError(task_id, snapshot.results)
            if attempt < max_attempts:
                await self._sleep(interval)

        raise TranscriptionTimeoutError(f"Task {task_id} did not finish after {max_attempts} polls")

    async def fetch_transcription(self, transcription_url: str) -> Transcription:
        response = await self._client.get(transcription_url)
        response.raise_for_status()
        return normalise_transcription(response.json())

    async def recognize(
        self,
        audio_urls: Sequence[str] | str,
        options: Optional[AsrOptions] = None,
        on_progress: Optional[Callable[[PollProgress], None]] = None,
        max_attempts: int = 60,
        interval: float = 2.0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[RecognitionResult]:
        """Transcribe a batch; a failed file becomes a failed entry, not an exception."""

        submitted = await self.submit(audio_urls, options)
        snapshot = await self.await_completion(
            submitted.task_id,
            max_attempts=max_attempts,
            interval=interval,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )

        results: List[RecognitionResult] = []
        for item in snapshot.results:
            if not isinstance(item, dict):
                results.append(RecognitionResult("", "failed", error=f"Malformed result entry: {item!r:.80}"))
                continue
            file_url = item.get("file_url", "")
            if item.get("subtask_status") == TaskStatus.SUCCEEDED.value and item.get("transcription_url"):
                try:
                    transcription = await self.fetch_transcription(item["transcription_url"])
                except (httpx.HTTPError, AsrRequestError, ValueError) as exc:
                    logger.warning("Fetching transcript for %s failed: %s", file_url, exc)
                    results.append(RecognitionResult(file_url, "failed", error=str(exc)))
                    continue
                results.append(RecognitionResult(file_url, "success", transcription=transcription))
            else:
                results.append(
                    RecognitionResult(
                        file_url,
                        "failed",
                        error=item.get("message") or "Recognition failed",
                        code=item.get("code"),
                    )
                )
        return results


def _report(callback: Optional[Callable[[PollProgress], None]], progress: PollProgress) -> None:
    if callback is not None:
        callback(progress)
