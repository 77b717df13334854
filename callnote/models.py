"""Dataclasses describing recordings, transcripts and analyses for callnote."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

NOT_MENTIONED = "未提及"
DEFAULT_BUSINESS_TYPE = "其他"


class RecordingStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TranscriptSource(str, Enum):
    ASR = "asr"
    DEMO = "demo"


class AnalysisSource(str, Enum):
    """Where an analysis came from.

    ``real`` is parsed from an LLM reply, ``fallback`` replaced a failed LLM
    call, ``demo`` was used because no LLM is configured.
    """

    REAL = "real"
    FALLBACK = "fallback"
    DEMO = "demo"


@dataclass(slots=True)
class AudioBlob:
    """Raw audio bytes plus their declared MIME type."""

    data: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class Word:
    text: str
    start_time: float
    end_time: float
    punctuation: str = ""


@dataclass(frozen=True, slots=True)
class Segment:
    text: str
    start_time: float
    end_time: float
    confidence: float
    speaker_id: int = 0
    words: tuple[Word, ...] = ()


@dataclass(frozen=True, slots=True)
class Transcription:
    """A finished transcript. Produced once and never mutated."""

    text: str
    confidence: float
    segments: tuple[Segment, ...] = ()
    duration_ms: Optional[int] = None
    audio_format: Optional[str] = None
    sampling_rate: Optional[int] = None
    provenance: TranscriptSource = TranscriptSource.ASR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "segments": [
                {
                    "text": seg.text,
                    "startTime": seg.start_time,
                    "endTime": seg.end_time,
                    "confidence": seg.confidence,
                    "speakerId": seg.speaker_id,
                    "words": [
                        {
                            "text": w.text,
                            "startTime": w.start_time,
                            "endTime": w.end_time,
                            "punctuation": w.punctuation,
                        }
                        for w in seg.words
                    ],
                }
                for seg in self.segments
            ],
            "durationMs": self.duration_ms,
            "audioFormat": self.audio_format,
            "samplingRate": self.sampling_rate,
            "provenance": self.provenance.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transcription":
        segments = tuple(
            Segment(
                text=seg.get("text", ""),
                start_time=float(seg.get("startTime", 0.0)),
                end_time=float(seg.get("endTime", 0.0)),
                confidence=float(seg.get("confidence", 0.0)),
                speaker_id=int(seg.get("speakerId", 0)),
                words=tuple(
                    Word(
                        text=w.get("text", ""),
                        start_time=float(w.get("startTime", 0.0)),
                        end_time=float(w.get("endTime", 0.0)),
                        punctuation=w.get("punctuation", ""),
                    )
                    for w in seg.get("words", [])
                ),
            )
            for seg in data.get("segments", [])
        )
        return cls(
            text=data.get("text", ""),
            confidence=float(data.get("confidence", 0.0)),
            segments=segments,
            duration_ms=data.get("durationMs"),
            audio_format=data.get("audioFormat"),
            sampling_rate=data.get("samplingRate"),
            provenance=TranscriptSource(data.get("provenance", TranscriptSource.ASR.value)),
        )


@dataclass(slots=True)
class CustomerInfo:
    name: str = NOT_MENTIONED
    customer_id: str = NOT_MENTIONED


@dataclass(slots=True)
class OptionalFields:
    demand_stimulation: str = NOT_MENTIONED
    objection_handling: str = NOT_MENTIONED
    customer_touch_point: str = NOT_MENTIONED
    failure_review: str = NOT_MENTIONED
    extended_thinking: str = NOT_MENTIONED


# Wire name -> attribute name for the optional insight fields.
OPTIONAL_FIELD_NAMES: Dict[str, str] = {
    "demandStimulation": "demand_stimulation",
    "objectionHandling": "objection_handling",
    "customerTouchPoint": "customer_touch_point",
    "failureReview": "failure_review",
    "extendedThinking": "extended_thinking",
}


@dataclass(slots=True)
class Analysis:
    """Structured sales-call insights. Every field has a non-null default."""

    business_type: str = DEFAULT_BUSINESS_TYPE
    customer_info: CustomerInfo = field(default_factory=CustomerInfo)
    follow_up_plan: str = NOT_MENTIONED
    customer_profile: List[str] = field(default_factory=list)
    optional_fields: OptionalFields = field(default_factory=OptionalFields)
    provenance: AnalysisSource = AnalysisSource.REAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "businessType": self.business_type,
            "customerInfo": {
                "name": self.customer_info.name,
                "customerId": self.customer_info.customer_id,
            },
            "followUpPlan": self.follow_up_plan,
            "customerProfile": list(self.customer_profile),
            "optionalFields": {
                wire: getattr(self.optional_fields, attr)
                for wire, attr in OPTIONAL_FIELD_NAMES.items()
            },
            "provenance": self.provenance.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Analysis":
        info = data.get("customerInfo") or {}
        optional = data.get("optionalFields") or {}
        return cls(
            business_type=data.get("businessType") or DEFAULT_BUSINESS_TYPE,
            customer_info=CustomerInfo(
                name=info.get("name") or NOT_MENTIONED,
                customer_id=info.get("customerId") or NOT_MENTIONED,
            ),
            follow_up_plan=data.get("followUpPlan") or NOT_MENTIONED,
            customer_profile=list(data.get("customerProfile") or []),
            optional_fields=OptionalFields(
                **{attr: optional.get(wire) or NOT_MENTIONED for wire, attr in OPTIONAL_FIELD_NAMES.items()}
            ),
            provenance=AnalysisSource(data.get("provenance", AnalysisSource.REAL.value)),
        )


@dataclass(slots=True)
class Recording:
    """A captured voice memo and everything the pipeline derived from it."""

    id: str
    audio_ref: str
    duration_ms: int
    created_at: datetime
    title: str = ""
    status: RecordingStatus = RecordingStatus.PROCESSING
    transcription: Optional[Transcription] = None
    analysis: Optional[Analysis] = None

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcription and self.transcription.text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "audioRef": self.audio_ref,
            "durationMs": self.duration_ms,
            "createdAt": self.created_at.isoformat(),
            "title": self.title,
            "status": self.status.value,
            "transcription": self.transcription.to_dict() if self.transcription else None,
            "analysis": self.analysis.to_dict() if self.analysis else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recording":
        transcription = data.get("transcription")
        analysis = data.get("analysis")
        return cls(
            id=data["id"],
            audio_ref=data.get("audioRef", data["id"]),
            duration_ms=int(data.get("durationMs", 0)),
            created_at=datetime.fromisoformat(data["createdAt"]),
            title=data.get("title", ""),
            status=RecordingStatus(data.get("status", RecordingStatus.PROCESSING.value)),
            transcription=Transcription.from_dict(transcription) if transcription else None,
            analysis=Analysis.from_dict(analysis) if analysis else None,
        )


@dataclass(slots=True)
class UploadCacheEntry:
    """Metadata for an audio blob parked locally after every upload backend failed."""

    cache_key: str
    blob_ref: str
    filename: str
    size_bytes: int
    mime_type: str
    created_at: datetime


def _default_relays() -> List[Dict[str, Any]]:
    return [
        {"url": "http://localhost:3001", "name": "local relay", "priority": 1, "scope": "dev"},
        {"url": "https://callnote-relay.vercel.app/api/proxy", "name": "hosted relay", "priority": 2, "scope": "prod"},
    ]


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    dashscope_api_key: Optional[str] = None
    asr_endpoint: str = "https://dashscope.aliyuncs.com/api/v1"
    asr_model: str = "paraformer-v2"
    poll_max_attempts: int = 60
    poll_interval: float = 2.0
    llm_api_key: Optional[str] = None
    llm_endpoint: str = "https://api.302.ai/v1/chat/completions"
    llm_model: str = "gemini-2.5-flash"
    llm_temperature: float = 0.4
    llm_max_tokens: int = 4096
    feishu_endpoint: str = "https://open.feishu.cn/open-apis"
    feishu_app_token: Optional[str] = None
    feishu_table_id: Optional[str] = None
    feishu_access_token: Optional[str] = None
    app_hostname: str = "localhost"
    use_relay: bool = True
    relays: List[Dict[str, Any]] = field(default_factory=_default_relays)
    demo_fallback: bool = True
    api_timeout: float = 60.0
    log_level: str = "INFO"
