import hashlib

import httpx
import pytest

from bootstrap_installer.actions import FetchVerifyExecute
from bootstrap_installer.errors import (
    DigestMismatchError,
    FetchError,
    FetchExhaustedError,
    InsecureSourceError,
    InvalidDigestError,
    UnknownInstallerError,
)
from bootstrap_installer.retry import RetryPolicy
from bootstrap_installer.verify import ChecksumEntry, ChecksumRegistry, VerificationGate

SCRIPT = b"#!/bin/sh\necho installing\n"
DIGEST = hashlib.sha256(SCRIPT).hexdigest()
URL = "https://example.com/install.sh"


def _gate(handler, sleeps=None, **kwargs) -> VerificationGate:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return VerificationGate(
        client=client,
        policy=RetryPolicy(jitter=0.0),
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
        **kwargs,
    )


def test_returns_content_when_digest_matches() -> None:
    gate = _gate(lambda request: httpx.Response(200, content=SCRIPT))
    assert gate.fetch_verified(URL, DIGEST) == SCRIPT


def test_digest_compare_is_case_insensitive() -> None:
    gate = _gate(lambda request: httpx.Response(200, content=SCRIPT))
    assert gate.fetch_verified(URL, DIGEST.upper()) == SCRIPT


def test_mismatch_never_returns_content() -> None:
    gate = _gate(lambda request: httpx.Response(200, content=b"tampered"))
    with pytest.raises(DigestMismatchError) as exc:
        gate.fetch_verified(URL, DIGEST)
    assert exc.value.expected == DIGEST
    assert exc.value.actual == hashlib.sha256(b"tampered").hexdigest()
    assert exc.value.source == URL


def test_http_source_rejected_without_network() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=SCRIPT)

    with pytest.raises(InsecureSourceError):
        _gate(handler).fetch_verified("http://example.com/install.sh", DIGEST)
    assert calls == []


def test_redirect_to_http_rejected_before_request() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.scheme)
        if request.url.scheme == "https":
            return httpx.Response(302, headers={"Location": "http://mirror.example.com/install.sh"})
        return httpx.Response(200, content=SCRIPT)

    with pytest.raises(InsecureSourceError) as exc:
        _gate(handler).fetch_verified(URL, DIGEST)
    assert exc.value.source.startswith("http://")
    assert seen == ["https"]


def test_https_redirect_is_followed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/install.sh":
            return httpx.Response(301, headers={"Location": "/releases/v2/install.sh"})
        return httpx.Response(200, content=SCRIPT)

    assert _gate(handler).fetch_verified(URL, DIGEST) == SCRIPT


def test_malformed_digest_rejected_before_fetch() -> None:
    with pytest.raises(InvalidDigestError):
        _gate(lambda request: httpx.Response(200, content=SCRIPT)).fetch_verified(URL, "abc123")


def test_transient_errors_are_retried() -> None:
    attempts = []
    sleeps = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=SCRIPT)

    assert _gate(handler, sleeps).fetch_verified(URL, DIGEST) == SCRIPT
    assert len(attempts) == 3
    assert sleeps == [5.0, 15.0]


def test_exhausted_retries_raise_fetch_exhausted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(FetchExhaustedError) as exc:
        _gate(handler).fetch_verified(URL, DIGEST)
    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, httpx.ReadTimeout)


def test_http_error_status_is_not_retried() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(404)

    with pytest.raises(FetchError) as exc:
        _gate(handler).fetch_verified(URL, DIGEST)
    assert exc.value.status_code == 404
    assert len(attempts) == 1


def test_mismatch_is_not_retried() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(200, content=b"other")

    with pytest.raises(DigestMismatchError):
        _gate(handler).fetch_verified(URL, DIGEST)
    assert len(attempts) == 1


def test_fetch_event_emitted(sink) -> None:
    gate = _gate(lambda request: httpx.Response(200, content=SCRIPT), events=sink)
    gate.fetch_verified(URL, DIGEST)
    (event,) = sink.events
    assert event.kind.value == "fetch_verified"
    assert event.data["passed"] is True
    assert event.data["actual"] == DIGEST


def test_checksum_registry_load_and_resolve(tmp_path) -> None:
    path = tmp_path / "checksums.yaml"
    path.write_text(f"installers:\n  tool_a:\n    url: {URL}\n    sha256: {DIGEST.upper()}\n", encoding="utf-8")
    registry = ChecksumRegistry.load(str(path))

    assert registry.resolve(FetchVerifyExecute(tool="tool_a")) == (URL, DIGEST)
    assert registry.resolve(FetchVerifyExecute(url=URL, sha256=DIGEST)) == (URL, DIGEST)
    with pytest.raises(UnknownInstallerError):
        registry.resolve(FetchVerifyExecute(tool="nope"))


def test_checksum_registry_rejects_bad_digest(tmp_path) -> None:
    path = tmp_path / "checksums.yaml"
    path.write_text(f"installers:\n  tool_a:\n    url: {URL}\n    sha256: deadbeef\n", encoding="utf-8")
    with pytest.raises(ValueError):
        ChecksumRegistry.load(str(path))


def test_fetch_installer_uses_registry() -> None:
    gate = _gate(lambda request: httpx.Response(200, content=SCRIPT))
    registry = ChecksumRegistry(entries={"tool_a": ChecksumEntry(url=URL, sha256=DIGEST)})
    assert gate.fetch_installer(FetchVerifyExecute(tool="tool_a"), registry) == SCRIPT


def test_checksum_registry_wraps_yaml_errors(tmp_path) -> None:
    path = tmp_path / "checksums.yaml"
    path.write_text("installers: [unclosed\n", encoding="utf-8")
    with pytest.raises(ValueError) as exc:
        ChecksumRegistry.load(str(path))
    assert "YAML parse error" in str(exc.value)
