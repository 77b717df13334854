"""Locate a reachable request-forwarding relay."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

DEV_HOSTNAMES = {"localhost", "127.0.0.1"}
PROBE_TIMEOUT = 5.0


class NoRelayAvailableError(RuntimeError):
    """Raised when none of the configured relays answers its health probe."""


@dataclass(slots=True)
class RelayCandidate:
    url: str
    name: str
    priority: int
    scope: str = "any"  # dev, prod or any

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayCandidate":
        return cls(
            url=str(data["url"]).rstrip("/"),
            name=str(data.get("name") or data["url"]),
            priority=int(data.get("priority", 10)),
            scope=str(data.get("scope", "any")),
        )


@dataclass(slots=True)
class ProbeResult:
    available: bool
    tested_at: float
    latency_ms: Optional[float] = None
    error: Optional[str] = None


def relay_url(base: str, target: str) -> str:
    """Build the relay address that forwards to ``target``."""

    return f"{base}?url={quote(target, safe='')}"


def is_dev_hostname(hostname: str) -> bool:
    return (hostname or "").strip().lower() in DEV_HOSTNAMES


class RelayLocator:
    """Pick the highest priority healthy relay for the current environment.

    The chosen relay is cached and re-probed lazily on the next call; if it has
    gone away every eligible candidate is probed again.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        candidates: Iterable[RelayCandidate],
        hostname: str = "localhost",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.candidates: List[RelayCandidate] = list(candidates)
        self.hostname = hostname
        self._clock = clock
        self.current: Optional[RelayCandidate] = None
        self.probe_results: Dict[str, ProbeResult] = {}

    @property
    def is_dev(self) -> bool:
        return is_dev_hostname(self.hostname)

    def eligible(self) -> List[RelayCandidate]:
        scope = "dev" if self.is_dev else "prod"
        return [c for c in self.candidates if c.scope in (scope, "any")]

    async def probe(self, candidate: RelayCandidate) -> bool:
        started = self._clock()
        try:
            response = await self._client.get(f"{candidate.url}/healthz", timeout=PROBE_TIMEOUT)
        except httpx.HTTPError as exc:
            logger.warning("Relay probe failed for %s: %s", candidate.name, exc)
            self.probe_results[candidate.url] = ProbeResult(
                available=False, tested_at=self._clock(), error=str(exc)
            )
            return False
        ok = response.is_success
        self.probe_results[candidate.url] = ProbeResult(
            available=ok,
            tested_at=self._clock(),
            latency_ms=(self._clock() - started) * 1000.0,
            error=None if ok else f"HTTP {response.status_code}",
        )
        return ok

    async def get_relay_base(self) -> str:
        if self.current is not None and await self.probe(self.current):
            return self.current.url

        self.current = None
        healthy = [c for c in self.eligible() if await self.probe(c)]
        if not healthy:
            raise NoRelayAvailableError("No relay server is reachable")
        self.current = min(healthy, key=lambda c: c.priority)
        logger.info("Using relay %s (%s)", self.current.name, self.current.url)
        return self.current.url

    async def wrap(self, target: str) -> str:
        """Return ``target`` routed through the current relay."""

        return relay_url(await self.get_relay_base(), target)

    def status(self) -> Dict[str, Any]:
        return {
            "current": self.current.url if self.current else None,
            "environment": "dev" if self.is_dev else "prod",
            "eligible": len(self.eligible()),
            "probes": {
                url: {
                    "available": result.available,
                    "latency_ms": result.latency_ms,
                    "error": result.error,
                }
                for url, result in self.probe_results.items()
            },
        }
