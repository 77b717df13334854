"""Audio helpers: Opus to WAV normalisation and MIME type mapping."""

from __future__ import annotations

import io
import logging
import wave

import numpy as np

from .models import AudioBlob

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000

_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mp3": "mp3",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/mp4;codecs=mp4a.40.2": "m4a",
    "audio/mp4;codecs=opus": "m4a",
    "audio/m4a": "m4a",
    "audio/aac": "aac",
    "audio/ogg": "ogg",
    "audio/ogg;codecs=opus": "ogg",
    "audio/webm": "webm",
    "audio/webm;codecs=opus": "webm",
    "audio/webm;codecs=vp8,opus": "webm",
    "audio/flac": "flac",
}


def _normalise_mime(mime_type: str) -> str:
    return "".join((mime_type or "").lower().split())


def needs_transcoding(mime_type: str) -> bool:
    """Opus payloads are rejected by the ASR service and must become WAV first."""

    return "opus" in _normalise_mime(mime_type)


def file_extension(mime_type: str) -> str:
    mt = _normalise_mime(mime_type)
    return _EXTENSIONS.get(mt) or ("wav" if "wav" in mt else "m4a")


def audio_format_hint(mime_type: str) -> str:
    """Return the coarse format name the ASR service expects (mp3, m4a or wav)."""

    mt = _normalise_mime(mime_type)
    if "wav" in mt:
        return "wav"
    if "mp3" in mt or "mpeg" in mt:
        return "mp3"
    return "m4a"


def resample_mono(samples: np.ndarray, src_hz: int, dst_hz: int = TARGET_SAMPLE_RATE) -> np.ndarray:
    """Linear interpolation resampling of a mono float32 signal."""

    if src_hz == dst_hz or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    n_dst = int(round(samples.shape[0] * (dst_hz / float(src_hz))))
    if n_dst <= 0:
        return np.zeros(0, dtype=np.float32)
    t_src = np.arange(samples.shape[0], dtype=np.float64) / float(src_hz)
    t_dst = np.arange(n_dst, dtype=np.float64) / float(dst_hz)
    return np.interp(t_dst, t_src, samples).astype(np.float32)


def to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Quantise float samples to int16.

    Samples are clamped to [-1, 1]; negatives scale by 32768, the rest by 32767,
    and the result is rounded half away from zero.
    """

    x = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(x < 0, x * 32768.0, x * 32767.0)
    rounded = np.sign(scaled) * np.floor(np.abs(scaled) + 0.5)
    return np.clip(rounded, -32768, 32767).astype("<i2")


def encode_wav(samples: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """Encode mono float samples as a canonical 44-byte-header PCM16 WAV file."""

    pcm = to_pcm16(samples)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm.tobytes())
    return buffer.getvalue()


def decode_mono(data: bytes) -> tuple[np.ndarray, int]:
    import soundfile as sf

    samples, samplerate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    # Downmix by averaging channels.
    mono = samples.mean(axis=1).astype(np.float32, copy=False)
    return mono, int(samplerate)


def probe_duration_ms(data: bytes) -> int:
    """Best-effort duration of an encoded file; 0 when libsndfile cannot read it."""

    import soundfile as sf

    try:
        info = sf.info(io.BytesIO(data))
    except (RuntimeError, TypeError, ValueError) as exc:
        logger.debug("Could not read audio duration: %s", exc)
        return 0
    return int(round(info.duration * 1000))


def normalize_audio(blob: AudioBlob) -> AudioBlob:
    """Convert Opus audio to 16 kHz mono WAV.

    Anything else is returned untouched. Conversion is advisory: if decoding or
    encoding fails the original blob comes back and the pipeline carries on.
    """

    if not needs_transcoding(blob.mime_type):
        return blob

    logger.info("Transcoding %s audio (%d bytes) to 16 kHz WAV", blob.mime_type, blob.size)
    try:
        mono, samplerate = decode_mono(blob.data)
        resampled = resample_mono(mono, samplerate, TARGET_SAMPLE_RATE)
        wav = encode_wav(resampled, TARGET_SAMPLE_RATE)
    except (RuntimeError, ValueError, TypeError, OSError, wave.Error) as exc:
        logger.warning("Audio transcoding failed, keeping original audio: %s", exc)
        return blob
    return AudioBlob(data=wav, mime_type="audio/wav")
