"""Upload audio to public file hosts so the ASR service can fetch it.

None of the free hosts is reliable on its own, so the broker walks a ranked
list of them. The last host that worked is tried first next time, hosts that
reject an upload sit out a cooldown, and when everything fails the audio is
parked in the local upload cache for a later :meth:`UploadBroker.retry_from_cache`.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from .audio import file_extension
from .models import AudioBlob, UploadCacheEntry
from .relay import NoRelayAvailableError, RelayLocator
from .storage import BlobStore, StorageError, UploadCacheIndex

logger = logging.getLogger(__name__)

MB = 1024 * 1024
MAX_ATTEMPTS = 3
COOLDOWN_SECONDS = 300.0
CACHE_PREFIX = "upload_cache_"


class UploadError(RuntimeError):
    """Base class for upload failures."""


class UploadBackendError(UploadError):
    """A host answered but refused the upload or returned something unusable."""


class PayloadTooLargeError(UploadError):
    """The audio exceeds the size limit of every host."""


class UploadCachedError(UploadError):
    """Every host failed; the audio was parked locally under ``cache_key``."""

    def __init__(self, cache_key: str) -> None:
        super().__init__(f"Upload failed; audio cached locally as {cache_key}. Retry later.")
        self.cache_key = cache_key


class UploadUnavailableError(UploadError):
    """Every host failed and the audio could not be cached either."""


class AttemptStatus(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    REJECTED = "rejected"


class UploadStatus(str, Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class AttemptResult:
    status: AttemptStatus
    url: Optional[str] = None
    error: Optional[str] = None
    transient: bool = False


@dataclass(slots=True)
class BackendOutcome:
    backend: str
    attempts: int
    url: Optional[str] = None
    error: Optional[str] = None
    transient: bool = False

    @property
    def success(self) -> bool:
        return self.url is not None


@dataclass(slots=True)
class UploadResult:
    status: UploadStatus
    url: Optional[str] = None
    backend: Optional[str] = None
    outcomes: List[BackendOutcome] = field(default_factory=list)


@dataclass(slots=True)
class CacheRetryResult:
    cache_key: str
    filename: str
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BrokerState:
    """Host selection state shared by every upload of one pipeline context."""

    sticky_index: int = 0
    unavailable_until: Dict[str, float] = field(default_factory=dict)
    clock: Callable[[], float] = time.monotonic

    def is_available(self, name: str) -> bool:
        deadline = self.unavailable_until.get(name)
        if deadline is None:
            return True
        if self.clock() >= deadline:
            del self.unavailable_until[name]
            return True
        return False

    def mark_unavailable(self, name: str, cooldown: float = COOLDOWN_SECONDS) -> None:
        self.unavailable_until[name] = self.clock() + cooldown


def _json_object(response: httpx.Response, host: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise UploadBackendError(f"{host} returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise UploadBackendError(f"{host} returned an unexpected reply: {payload!r:.80}")
    return payload


class UploadBackend:
    """A single file host."""

    name: str = "backend"
    max_size: int = 100 * MB

    async def upload(
        self,
        client: httpx.AsyncClient,
        blob: AudioBlob,
        filename: str,
        relay: Optional[RelayLocator] = None,
    ) -> str:
        raise NotImplementedError

    def _files(self, field_name: str, blob: AudioBlob, filename: str) -> Dict[str, Any]:
        return {field_name: (filename, blob.data, blob.mime_type)}


class TmpFilesBackend(UploadBackend):
    name = "TmpFiles.org"
    max_size = 100 * MB
    endpoint = "https://tmpfiles.org/api/v1/upload"

    async def upload(self, client, blob, filename, relay=None):
        response = await client.post(self.endpoint, files=self._files("file", blob, filename))
        response.raise_for_status()
        payload = _json_object(response, self.name)
        if payload.get("status") != "success":
            raise UploadBackendError(payload.get("message") or "TmpFiles.org rejected the upload")

        page_url = payload["data"]["url"]
        if page_url.startswith("http://"):
            page_url = "https://" + page_url[len("http://"):]
        direct_url = page_url.replace("tmpfiles.org/", "tmpfiles.org/dl/", 1)
        if await self._is_audio(client, direct_url, relay):
            return direct_url
        return page_url

    async def _is_audio(self, client: httpx.AsyncClient, url: str, relay: Optional[RelayLocator]) -> bool:
        try:
            target = await relay.wrap(url) if relay is not None else url
            response = await client.head(target)
        except (httpx.HTTPError, NoRelayAvailableError) as exc:
            logger.warning("Direct link check failed for %s, using page URL: %s", url, exc)
            return False
        content_type = response.headers.get("content-type", "")
        if not content_type.lower().startswith("audio/"):
            logger.warning("Direct link %s served %r, using page URL", url, content_type)
            return False
        return True


class ZeroX0Backend(UploadBackend):
    name = "0x0.st"
    max_size = 512 * MB
    endpoint = "https://0x0.st"

    async def upload(self, client, blob, filename, relay=None):
        response = await client.post(self.endpoint, files=self._files("file", blob, filename))
        response.raise_for_status()
        url = response.text.strip()
        if not url.startswith("http"):
            raise UploadBackendError(f"Unexpected response from 0x0.st: {url[:80]!r}")
        return url


class FileIOBackend(UploadBackend):
    name = "File.io"
    max_size = 100 * MB
    endpoint = "https://www.file.io"

    async def upload(self, client, blob, filename, relay=None):
        response = await client.post(self.endpoint, files=self._files("file", blob, filename))
        response.raise_for_status()
        payload = _json_object(response, self.name)
        if not payload.get("success"):
            raise UploadBackendError(f"File.io rejected the upload: {payload.get('message') or 'unknown error'}")
        return payload["link"]


class CatboxBackend(UploadBackend):
    name = "Catbox.moe"
    max_size = 200 * MB
    endpoint = "https://catbox.moe/user/api.php"

    async def upload(self, client, blob, filename, relay=None):
        response = await client.post(
            self.endpoint,
            data={"reqtype": "fileupload"},
            files=self._files("fileToUpload", blob, filename),
        )
        response.raise_for_status()
        url = response.text.strip()
        if not url.startswith("https://files.catbox.moe/"):
            raise UploadBackendError("Invalid response from Catbox.moe")
        return url


class UguuBackend(UploadBackend):
    name = "Uguu.se"
    max_size = 128 * MB
    endpoint = "https://uguu.se/upload.php"

    async def upload(self, client, blob, filename, relay=None):
        response = await client.post(self.endpoint, files=self._files("files[]", blob, filename))
        response.raise_for_status()
        payload = _json_object(response, self.name)
        files = payload.get("files") or []
        if not payload.get("success") or not files:
            raise UploadBackendError("Uguu.se upload failed or returned an invalid response")
        return files[0]["url"]


def default_backends(relay_enabled: bool = False) -> List[UploadBackend]:
    """Hosts in preference order.

    File.io can only be reached directly; the relay does not forward to it.
    """

    backends: List[UploadBackend] = [TmpFilesBackend(), ZeroX0Backend()]
    if not relay_enabled:
        backends.append(FileIOBackend())
    backends.extend([CatboxBackend(), UguuBackend()])
    return backends


def new_cache_key() -> str:
    return f"{CACHE_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class UploadBroker:
    def __init__(
        self,
        client: httpx.AsyncClient,
        blobs: Optional[BlobStore] = None,
        cache_index: Optional[UploadCacheIndex] = None,
        state: Optional[BrokerState] = None,
        backends: Optional[Sequence[UploadBackend]] = None,
        relay: Optional[RelayLocator] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_delay: float = 1.0,
    ) -> None:
        self._client = client
        self._blobs = blobs
        self._cache_index = cache_index
        self.state = state or BrokerState()
        self.backends: List[UploadBackend] = (
            list(backends) if backends is not None else default_backends(relay_enabled=relay is not None)
        )
        self._relay = relay
        self._sleep = sleep
        self._retry_delay = retry_delay

    @property
    def max_size(self) -> int:
        return max(backend.max_size for backend in self.backends)

    def filename_for(self, blob: AudioBlob) -> str:
        return f"recording-{int(time.time() * 1000)}.{file_extension(blob.mime_type)}"

    async def _attempt(self, backend: UploadBackend, blob: AudioBlob, filename: str, attempt: int) -> AttemptResult:
        try:
            url = await backend.upload(self._client, blob, filename, self._relay)
        except httpx.TransportError as exc:
            if attempt < MAX_ATTEMPTS:
                return AttemptResult(AttemptStatus.RETRY, error=str(exc), transient=True)
            return AttemptResult(AttemptStatus.REJECTED, error=str(exc), transient=True)
        except (httpx.HTTPError, UploadError, NoRelayAvailableError, AttributeError, KeyError, TypeError, ValueError) as exc:
            return AttemptResult(AttemptStatus.REJECTED, error=str(exc) or type(exc).__name__)
        return AttemptResult(AttemptStatus.SUCCESS, url=url)

    async def _run_backend(self, backend: UploadBackend, blob: AudioBlob, filename: str) -> BackendOutcome:
        attempt = 0
        while True:
            attempt += 1
            result = await self._attempt(backend, blob, filename, attempt)
            if result.status is AttemptStatus.SUCCESS:
                return BackendOutcome(backend.name, attempt, url=result.url)
            logger.warning("%s attempt %d failed: %s", backend.name, attempt, result.error)
            if result.status is AttemptStatus.RETRY:
                await self._sleep(attempt * self._retry_delay)
                continue
            return BackendOutcome(backend.name, attempt, error=result.error, transient=result.transient)

    async def attempt_upload(self, blob: AudioBlob, filename: Optional[str] = None) -> UploadResult:
        """One pass over the hosts, starting at the sticky one."""

        filename = filename or self.filename_for(blob)
        outcomes: List[BackendOutcome] = []
        count = len(self.backends)
        for offset in range(count):
            index = (self.state.sticky_index + offset) % count
            backend = self.backends[index]
            if not self.state.is_available(backend.name) or blob.size > backend.max_size:
                continue

            logger.info("Uploading %s to %s", filename, backend.name)
            outcome = await self._run_backend(backend, blob, filename)
            outcomes.append(outcome)
            if outcome.success:
                self.state.sticky_index = index
                logger.info("Uploaded to %s: %s", backend.name, outcome.url)
                return UploadResult(UploadStatus.SUCCESS, url=outcome.url, backend=backend.name, outcomes=outcomes)
            if not outcome.transient:
                self.state.mark_unavailable(backend.name)
        return UploadResult(UploadStatus.EXHAUSTED, outcomes=outcomes)

    async def upload(self, blob: AudioBlob) -> str:
        """Return a public URL for ``blob`` or park it in the upload cache."""

        if blob.size > self.max_size:
            raise PayloadTooLargeError(f"Audio is {blob.size} bytes; the largest host accepts {self.max_size}")

        filename = self.filename_for(blob)
        result = await self.attempt_upload(blob, filename)
        if result.status is UploadStatus.SUCCESS:
            return result.url  # type: ignore[return-value]

        try:
            cache_key = await self._cache(blob, filename)
        except (StorageError, UploadError) as exc:
            logger.error("Could not cache audio after failed upload: %s", exc)
            raise UploadUnavailableError("All upload hosts failed and the local cache is unavailable") from exc
        logger.warning("All upload hosts failed; audio cached as %s", cache_key)
        raise UploadCachedError(cache_key)

    async def _cache(self, blob: AudioBlob, filename: str) -> str:
        if self._blobs is None or self._cache_index is None:
            raise UploadError("No upload cache configured")
        cache_key = new_cache_key()
        await self._blobs.put(cache_key, blob)
        await self._cache_index.add(
            UploadCacheEntry(
                cache_key=cache_key,
                blob_ref=cache_key,
                filename=filename,
                size_bytes=blob.size,
                mime_type=blob.mime_type,
                created_at=datetime.now(),
            )
        )
        return cache_key

    async def retry_from_cache(self) -> List[CacheRetryResult]:
        """Re-upload every parked blob; successes are removed from the cache."""

        if self._blobs is None or self._cache_index is None:
            return []
        results: List[CacheRetryResult] = []
        for entry in await self._cache_index.list():
            try:
                blob = await self._blobs.get(entry.blob_ref)
                if blob is None:
                    logger.warning("Dropping orphaned upload cache entry %s", entry.cache_key)
                    await self._cache_index.remove(entry.cache_key)
                    continue

                result = await self.attempt_upload(blob, entry.filename)
                if result.status is UploadStatus.SUCCESS:
                    await self._blobs.delete(entry.blob_ref)
                    await self._cache_index.remove(entry.cache_key)
                    results.append(CacheRetryResult(entry.cache_key, entry.filename, True, url=result.url))
                else:
                    errors = "; ".join(f"{o.backend}: {o.error}" for o in result.outcomes) or "no host available"
                    results.append(CacheRetryResult(entry.cache_key, entry.filename, False, error=errors))
            except StorageError as exc:
                logger.error("Retrying cached upload %s failed: %s", entry.cache_key, exc)
                results.append(CacheRetryResult(entry.cache_key, entry.filename, False, error=str(exc)))
        return results

    def status(self) -> Dict[str, Any]:
        current = self.backends[self.state.sticky_index] if self.backends else None
        services = [
            {
                "name": backend.name,
                "available": self.state.is_available(backend.name),
                "max_size": backend.max_size,
                "current": index == self.state.sticky_index,
            }
            for index, backend in enumerate(self.backends)
        ]
        return {
            "current_index": self.state.sticky_index,
            "current": current.name if current else None,
            "services": services,
            "total_available": sum(1 for s in services if s["available"]),
        }
