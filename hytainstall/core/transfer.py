# hytainstall/core/transfer.py
"""
HyTa Installer – resilient HTTP transfer
========================================

One aiohttp session wrapped with the retry policy every network call of
the installer goes through.

Public API
----------
ResilientTransfer.probe(url)              -> ProbeResult   (HEAD, no retries)
ResilientTransfer.get_text(url)           -> str           (small API calls)
ResilientTransfer.get_bytes(url)          -> bytes
ResilientTransfer.get_json(url)           -> Any
ResilientTransfer.download(job, reporter) -> DownloadResult

Downloads stream into `<destination>.part`.  The side-file survives
failures and cancellation so the next attempt (or the next session)
resumes with a `Range` request; it is only moved onto the destination
once size and SHA-256 check out.

Cancellation is `asyncio.CancelledError`: it is never retried, never
reported as an error and leaves the side-file alone.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import random
import ssl
import time
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

import aiohttp

from hytainstall.core import config
from hytainstall.core.errors import DownloadError
from hytainstall.core.models import (
    DownloadJob,
    DownloadResult,
    ProbeResult,
    RetryConfig,
    TlsErrorKind,
)
from hytainstall.core.progress import SILENT, Reporter

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 5.0
PROGRESS_INTERVAL = 0.1           # seconds between progress callbacks
TLS_MAX_ATTEMPTS = 2
JITTER = 0.3

_TLS_GUIDANCE = {
    TlsErrorKind.certificate: (
        "SSL certificate validation failed. This may be caused by:\n"
        "• Antivirus software intercepting connections\n"
        "• Corporate proxy/firewall\n"
        "• Outdated root certificates\n"
        "• VPN software\n\n"
        "Try: disable antivirus SSL scanning, update the system, or use a VPN."
    ),
    TlsErrorKind.protocol: (
        "SSL/TLS protocol error. Try:\n"
        "• Updating the system to get current TLS support\n"
        "• Checking whether your network blocks certain connections\n"
        "• Using a VPN"
    ),
    TlsErrorKind.authentication: (
        "SSL authentication failed. A proxy or security product is probably "
        "presenting its own certificate; disable SSL inspection or use a VPN."
    ),
}


class IntegrityError(Exception):
    """Size or hash mismatch of a finished transfer (internal, retried)."""


# ──────────────────────────────────────────────
# 1. Error classification
# ──────────────────────────────────────────────
def _exception_chain(exc: BaseException):
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def classify_tls_error(exc: BaseException) -> Tuple[TlsErrorKind, str]:
    """
    Inspect `exc` and everything it was raised from.  Returns the TLS
    category and a user-facing explanation, or (none, "") for non-TLS
    failures.
    """
    for err in _exception_chain(exc):
        if isinstance(err, (aiohttp.ClientConnectorCertificateError,
                            ssl.SSLCertVerificationError)):
            return TlsErrorKind.certificate, _TLS_GUIDANCE[TlsErrorKind.certificate]

        message = str(err).lower()
        is_ssl_type = isinstance(err, (ssl.SSLError, aiohttp.ClientSSLError))
        mentions_tls = any(
            word in message for word in ("ssl", "tls", "certificate", "secure channel")
        )
        if not (is_ssl_type or mentions_tls):
            continue

        if "certificate" in message:
            kind = TlsErrorKind.certificate
        elif "protocol" in message or "handshake" in message or "version" in message:
            kind = TlsErrorKind.protocol
        elif "authenticat" in message:
            kind = TlsErrorKind.authentication
        else:
            return TlsErrorKind.unknown, (
                f"SSL/TLS error: {err}\n\n"
                "Try disabling antivirus SSL scanning or using a VPN."
            )
        return kind, _TLS_GUIDANCE[kind]

    return TlsErrorKind.none, ""


def friendly_error(exc: BaseException) -> str:
    """Human readable explanation for a failed network operation."""
    kind, message = classify_tls_error(exc)
    if kind is not TlsErrorKind.none:
        return message
    if isinstance(exc, DownloadError):
        return str(exc)
    if isinstance(exc, aiohttp.ClientConnectorError):
        return "Could not connect to server. Check your internet connection."
    if isinstance(exc, asyncio.TimeoutError):
        return "Connection timed out. The server may be slow or your connection unstable."
    if isinstance(exc, aiohttp.ClientResponseError):
        return f"Server answered {exc.status} {exc.message}"
    return str(exc) or exc.__class__.__name__


# ──────────────────────────────────────────────
# 2. Helpers
# ──────────────────────────────────────────────
def compute_delay(attempt: int, retry: RetryConfig,
                  rand: Callable[[], float] = random.random) -> float:
    """
    Backoff before attempt `attempt + 1`:
    initial * 2**(attempt-1) plus up to 30 % jitter, capped at max_delay.
    """
    base = retry.initial_delay * (2 ** (attempt - 1))
    return min(retry.max_delay, base * (1 + rand() * JITTER))


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def format_bytes(num: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if num < 1024:
            return f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} TB"


def _unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("could not delete %s: %s", path, exc)


# ──────────────────────────────────────────────
# 3. Transfer service
# ──────────────────────────────────────────────
class ResilientTransfer:
    """
    Use as `async with ResilientTransfer() as http:`.  A session passed
    in from outside is borrowed and not closed.
    """

    def __init__(
        self,
        retry: RetryConfig | None = None,
        session: aiohttp.ClientSession | None = None,
        user_agent: str = config.USER_AGENT,
    ) -> None:
        self.retry = retry or RetryConfig()
        self._session = session
        self._owns_session = session is None
        self._user_agent = user_agent

    async def __aenter__(self) -> "ResilientTransfer":
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.retry.verify_ssl else False)
            if not self.retry.verify_ssl:
                logger.warning("SSL certificate validation is disabled")
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={
                    "User-Agent": self._user_agent,
                    "Accept": "*/*",
                    "Accept-Encoding": "gzip, deflate",
                },
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    # ── existence probe ──────────────────────────
    async def probe(self, url: str, timeout: float = PROBE_TIMEOUT) -> ProbeResult:
        """HEAD request; any error or non-2xx status means 'not there'."""
        session = self._ensure_session()
        try:
            async with session.head(
                url,
                allow_redirects=True,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if 200 <= resp.status < 300:
                    return ProbeResult(exists=True, size=resp.content_length)
                return ProbeResult(exists=False)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.debug("HEAD %s failed: %s", url, exc)
            return ProbeResult(exists=False)

    # ── in-memory fetches ────────────────────────
    async def get_bytes(self, url: str, retry: RetryConfig | None = None,
                        reporter: Reporter = SILENT) -> bytes:
        retry = retry or self.retry
        session = self._ensure_session()
        last_exc: Optional[BaseException] = None
        attempt = 0

        while attempt < retry.max_retries:
            attempt += 1
            try:
                logger.debug("GET %s (attempt %d/%d)", url, attempt, retry.max_retries)
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=retry.timeout)
                ) as resp:
                    resp.raise_for_status()
                    body = await resp.read()
                logger.debug("GET %s completed: %d bytes", url, len(body))
                return body
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                last_exc = exc
                logger.debug("GET %s failed (attempt %d): %s", url, attempt, exc)
                if not await self._before_retry(exc, attempt, retry, reporter):
                    break

        kind, _ = classify_tls_error(last_exc) if last_exc else (TlsErrorKind.none, "")
        message = friendly_error(last_exc) if last_exc else "request failed"
        logger.error("GET %s failed after %d attempts: %s", url, attempt, message)
        raise DownloadError(message, url=url, attempts=attempt, tls_error=kind) from last_exc

    async def get_text(self, url: str, retry: RetryConfig | None = None,
                       reporter: Reporter = SILENT) -> str:
        return (await self.get_bytes(url, retry, reporter)).decode("utf-8")

    async def get_json(self, url: str, retry: RetryConfig | None = None,
                       reporter: Reporter = SILENT) -> Any:
        text = await self.get_text(url, retry, reporter)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise DownloadError(f"Malformed JSON from {url}: {exc}", url=url) from exc

    # ── file download ────────────────────────────
    async def download(self, job: DownloadJob, reporter: Reporter = SILENT) -> DownloadResult:
        """
        Fetch `job.url` into `job.destination` with resume, retries and
        verification.  Never raises for network or integrity problems –
        inspect `result.success` / `result.error`.
        """
        retry = job.retry
        part = job.part_path
        expected = job.expected_size or 0
        result = DownloadResult(path=job.destination)
        last_exc: Optional[BaseException] = None
        attempt = 0

        logger.debug("download %s -> %s", job.url, job.destination)
        job.destination.parent.mkdir(parents=True, exist_ok=True)

        while attempt < retry.max_retries:
            attempt += 1
            result.attempts_used = attempt
            try:
                logger.debug("download %s (attempt %d/%d)", job.url, attempt, retry.max_retries)
                existing = 0
                if retry.resume_enabled and part.exists():
                    existing = part.stat().st_size
                elif part.exists():
                    _unlink(part)

                if expected and existing >= expected:
                    # side-file already complete from an earlier run
                    result.resumed = True
                    result.bytes_transferred = existing
                    result.sha256 = self._verify_and_finalize(part, job)
                    result.success = True
                    reporter.progress(100)
                    return result

                if existing:
                    logger.debug("resuming %s from %d bytes", job.url, existing)
                    reporter.status(f"Resuming from {format_bytes(existing)}...")

                written = await self._stream(job, existing, result, reporter)
                result.bytes_transferred = written

                if expected and written != expected:
                    _unlink(part)
                    raise IntegrityError(f"Download incomplete: {written}/{expected} bytes")

                result.sha256 = self._verify_and_finalize(part, job)
                result.success = True
                result.error = None
                reporter.progress(100)
                logger.debug("download completed: %d bytes", written)
                return result

            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, IntegrityError) as exc:
                last_exc = exc
                result.error = friendly_error(exc)
                logger.debug("download %s failed (attempt %d): %s", job.url, attempt, exc)
                if not await self._before_retry(exc, attempt, retry, reporter):
                    break

        if last_exc is not None:
            kind, message = classify_tls_error(last_exc)
            result.tls_error = kind
            if kind is not TlsErrorKind.none:
                result.error = message
                logger.error("download %s failed due to SSL error: %s", job.url, kind.value)
            else:
                logger.error("download %s failed after %d attempts: %s",
                             job.url, attempt, last_exc)
        return result

    async def _stream(self, job: DownloadJob, existing: int,
                      result: DownloadResult, reporter: Reporter) -> int:
        """One GET; appends to (or restarts) the side-file.  Returns its final size."""
        retry = job.retry
        part = job.part_path
        session = self._ensure_session()
        headers = {"Range": f"bytes={existing}-"} if existing else {}

        async with session.get(
            job.url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=retry.timeout),
        ) as resp:
            if existing and resp.status == 416:
                _unlink(part)
                raise IntegrityError("server rejected resume range; restarting")
            if existing and resp.status != 206:
                logger.debug("server ignored Range for %s, starting fresh", job.url)
                existing = 0
                _unlink(part)
            resp.raise_for_status()

            result.resumed = existing > 0
            content_length = resp.content_length or 0
            total = job.expected_size or (existing + content_length)

            downloaded = existing
            last_report = 0.0
            with part.open("ab" if existing else "wb") as fh:
                async for chunk in resp.content.iter_chunked(retry.buffer_size):
                    fh.write(chunk)
                    downloaded += len(chunk)
                    now = time.monotonic()
                    if total and now - last_report >= PROGRESS_INTERVAL:
                        reporter.progress(downloaded / total * 100)
                        last_report = now
        return downloaded

    def _verify_and_finalize(self, part: Path, job: DownloadJob) -> str:
        size = part.stat().st_size
        if job.expected_size and size != job.expected_size:
            _unlink(part)
            raise IntegrityError(f"size mismatch: {size}/{job.expected_size} bytes")

        digest = sha256_file(part)
        if job.expected_hash and digest.lower() != job.expected_hash.lower():
            logger.warning("hash mismatch for %s: expected %s, got %s",
                           job.destination.name, job.expected_hash, digest)
            _unlink(part)
            raise IntegrityError(f"SHA256 mismatch for {job.destination.name}")

        os.replace(part, job.destination)
        return digest

    async def _before_retry(self, exc: BaseException, attempt: int,
                            retry: RetryConfig, reporter: Reporter) -> bool:
        """Sleep for the backoff delay; False when no further attempt should run."""
        kind, message = classify_tls_error(exc)
        if kind is not TlsErrorKind.none:
            logger.warning("SSL error (%s): %s", kind.value, exc)
            reporter.status("SSL Error - check antivirus/VPN")
            if attempt >= TLS_MAX_ATTEMPTS:
                logger.error("SSL error details: %s", message)
                return False

        if attempt >= retry.max_retries:
            return False

        delay = compute_delay(attempt, retry)
        reporter.status(f"Download failed, retrying in {delay:.0f}s...")
        await asyncio.sleep(delay)
        return True
