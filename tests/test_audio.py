import io
import wave

import numpy as np

from callnote import audio
from callnote.models import AudioBlob


def test_silent_second_encodes_to_canonical_wav():
    data = audio.encode_wav(np.zeros(16000, dtype=np.float32), 16000)

    assert data[:4] == b"RIFF"
    assert data[8:12] == b"WAVE"
    with wave.open(io.BytesIO(data)) as wf:
        assert wf.getframerate() == 16000
        assert wf.getnchannels() == 1
        assert wf.getsampwidth() == 2
        assert wf.getnframes() == 16000
    assert len(data) == 44 + 32000


def test_pcm_quantisation_is_asymmetric_and_clamped():
    pcm = audio.to_pcm16(np.array([-1.0, 1.0, 0.0, 2.0, -3.0, 0.5]))
    assert pcm.tolist() == [-32768, 32767, 0, 32767, -32768, 16384]


def test_resample_changes_length():
    samples = np.linspace(-1.0, 1.0, 48000, dtype=np.float32)
    resampled = audio.resample_mono(samples, 48000, 16000)
    assert resampled.shape == (16000,)
    assert resampled.dtype == np.float32


def test_needs_transcoding_only_for_opus():
    assert audio.needs_transcoding("audio/webm;codecs=opus")
    assert audio.needs_transcoding("audio/ogg; codecs=opus")
    assert not audio.needs_transcoding("audio/wav")
    assert not audio.needs_transcoding("audio/mp4")


def test_file_extension_and_format_hint():
    assert audio.file_extension("audio/webm;codecs=opus") == "webm"
    assert audio.file_extension("audio/x-wav") == "wav"
    assert audio.file_extension("audio/unknown") == "m4a"
    assert audio.audio_format_hint("audio/mpeg") == "mp3"
    assert audio.audio_format_hint("audio/wav") == "wav"
    assert audio.audio_format_hint("audio/webm") == "m4a"


def test_normalize_leaves_non_opus_audio_alone():
    blob = AudioBlob(b"not really audio", "audio/wav")
    assert audio.normalize_audio(blob) is blob


def test_normalize_converts_opus(monkeypatch):
    def fake_decode(data):
        return np.zeros(48000, dtype=np.float32), 48000

    monkeypatch.setattr(audio, "decode_mono", fake_decode)
    result = audio.normalize_audio(AudioBlob(b"opus", "audio/webm;codecs=opus"))

    assert result.mime_type == "audio/wav"
    with wave.open(io.BytesIO(result.data)) as wf:
        assert wf.getframerate() == 16000
        assert wf.getnframes() == 16000


def test_normalize_keeps_original_when_decoding_fails(monkeypatch):
    def broken_decode(data):
        raise RuntimeError("unsupported format")

    monkeypatch.setattr(audio, "decode_mono", broken_decode)
    blob = AudioBlob(b"opus", "audio/webm;codecs=opus")
    assert audio.normalize_audio(blob) is blob


def test_normalize_keeps_original_when_codec_library_is_missing(monkeypatch):
    def missing_library(data):
        raise OSError("cannot load library 'libsndfile.so'")

    monkeypatch.setattr(audio, "decode_mono", missing_library)
    blob = AudioBlob(b"opus", "audio/ogg;codecs=opus")
    assert audio.normalize_audio(blob) is blob
