"""Top-level package for callnote."""

__version__ = "0.1.0"

from . import analyzer, asr, audio, bitable, config, parsing, pipeline, relay, storage, upload

__all__ = [
    "analyzer",
    "asr",
    "audio",
    "bitable",
    "config",
    "parsing",
    "pipeline",
    "relay",
    "storage",
    "upload",
]
