"""Verify-before-execute gate for remotely fetched installers.

Fetched content is held in memory and only handed back after its SHA-256
matches the expected digest. Nothing streamed or partial ever leaves this
module.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

import httpx
import yaml

from .actions import FetchVerifyExecute
from .errors import (
    DigestMismatchError,
    FetchError,
    FetchExhaustedError,
    InsecureSourceError,
    InvalidDigestError,
    UnknownInstallerError,
)
from .events import EventKind, EventSink, LifecycleEvent
from .retry import RetryExhausted, RetryPolicy

logger = logging.getLogger(__name__)

SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_BYTES = 50_000_000
USER_AGENT = "bootstrap-installer (+verified-fetch)"
MAX_REDIRECTS = 5


def is_transient(error: BaseException) -> bool:
    """Timeouts, DNS/connect failures and connection resets."""

    return isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError))


DEFAULT_FETCH_POLICY = RetryPolicy(retryable=is_transient)


@dataclass(frozen=True)
class VerifiedFetchRecord:
    source: str
    expected: str
    actual: str
    passed: bool


@dataclass(frozen=True)
class ChecksumEntry:
    url: str
    sha256: str


@dataclass(frozen=True)
class ChecksumRegistry:
    """Known installers: tool name -> (url, sha256)."""

    entries: Mapping[str, ChecksumEntry] = dataclasses.field(default_factory=dict)

    @classmethod
    def load(cls, path: str) -> "ChecksumRegistry":
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(path)

        try:
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"{p}: YAML parse error: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError(f"{p}: checksums file must contain a mapping")
        installers = raw.get("installers") or {}
        if not isinstance(installers, dict):
            raise ValueError(f"{p}: installers must be a mapping")

        entries: Dict[str, ChecksumEntry] = {}
        for tool, entry in installers.items():
            url = entry.get("url") if isinstance(entry, dict) else None
            sha = entry.get("sha256") if isinstance(entry, dict) else None
            if not isinstance(url, str) or not isinstance(sha, str) or not SHA256_RE.match(sha):
                raise ValueError(f"{p}: installers.{tool} needs url and a 64-hex sha256")
            entries[str(tool)] = ChecksumEntry(url=url, sha256=sha.lower())

        logger.info("Loaded %d installer checksums from %s", len(entries), p)
        return cls(entries=entries)

    def resolve(self, action: FetchVerifyExecute) -> Tuple[str, str]:
        """Return ``(url, sha256)`` for a verified-installer action."""

        if action.tool is not None:
            entry = self.entries.get(action.tool)
            if entry is None:
                raise UnknownInstallerError(action.tool)
            return entry.url, entry.sha256
        assert action.url is not None and action.sha256 is not None
        return action.url, action.sha256


def _require_https(url: str) -> None:
    if urlparse(url).scheme.lower() != "https":
        raise InsecureSourceError(url)


class VerificationGate:
    """Fetch content over HTTPS and release it only when its digest matches."""

    def __init__(
        self,
        *,
        client: Optional[httpx.Client] = None,
        policy: RetryPolicy = DEFAULT_FETCH_POLICY,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_bytes: int = DEFAULT_MAX_BYTES,
        events: Optional[EventSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        # The transient-error predicate is the gate's, whatever policy is passed.
        self.policy = dataclasses.replace(policy, retryable=is_transient)
        self.timeout_s = timeout_s
        self.max_bytes = max_bytes
        self._events = events
        self._sleep = sleep

    def __enter__(self) -> "VerificationGate":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout_s),
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    def _get(self, source: str) -> bytes:
        # Redirects are followed by hand so every hop is checked before it is requested.
        url = source
        for _ in range(MAX_REDIRECTS + 1):
            _require_https(url)
            resp = self.client.get(url, follow_redirects=False)
            if not resp.is_redirect:
                break
            url = str(resp.url.join(resp.headers["Location"]))
            logger.debug("Redirected to %s", url)
        else:
            raise FetchError(source, f"Too many redirects fetching {source}")

        if resp.status_code >= 400:
            raise FetchError(source, f"HTTP {resp.status_code} fetching {source}", status_code=resp.status_code)
        content = resp.content
        if len(content) > self.max_bytes:
            raise FetchError(source, f"Refusing {len(content)} bytes from {source} (limit {self.max_bytes})")
        return content

    def fetch_verified(self, source: str, expected_digest: str) -> bytes:
        _require_https(source)
        if not isinstance(expected_digest, str) or not SHA256_RE.match(expected_digest.strip()):
            raise InvalidDigestError(source, expected_digest)
        expected = expected_digest.strip().lower()

        try:
            content = self.policy.call(lambda: self._get(source), describe=f"fetch {source}", sleep=self._sleep)
        except RetryExhausted as e:
            raise FetchExhaustedError(source, e.attempts, e.last_error) from e.last_error

        actual = hashlib.sha256(content).hexdigest()
        record = VerifiedFetchRecord(source=source, expected=expected, actual=actual, passed=actual == expected)
        self._report(record, len(content))
        if not record.passed:
            raise DigestMismatchError(source, expected, actual)
        return content

    def fetch_installer(self, action: FetchVerifyExecute, registry: ChecksumRegistry) -> bytes:
        url, digest = registry.resolve(action)
        return self.fetch_verified(url, digest)

    def _report(self, record: VerifiedFetchRecord, size: int) -> None:
        if record.passed:
            logger.info("Verified %s (%d bytes, sha256 %s)", record.source, size, record.actual)
        else:
            logger.error(
                "Checksum mismatch for %s: expected %s, actual %s", record.source, record.expected, record.actual
            )
        if self._events is not None:
            self._events.emit(
                LifecycleEvent(
                    kind=EventKind.FETCH_VERIFIED,
                    data={
                        "source": record.source,
                        "expected": record.expected,
                        "actual": record.actual,
                        "passed": record.passed,
                    },
                )
            )
