"""Certificate classifier — issuer allowlist, chain verification, expiry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

from ccms_audit.core.backend import CertificateBackend
from ccms_audit.core.base import CertificateRecord, CertStatus, ParsedCertificate, TrustSet
from ccms_audit.core.errors import ClassificationFailure, ParseSkip

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_TIMEOUT = 30.0


def compose_status(
    issuer_match: bool, expired: bool, chain_verified: bool
) -> tuple[CertStatus, ...]:
    """Every failing condition, in NON_CCMS, EXPIRED, UNVERIFIED order. Empty means OK."""
    status: list[CertStatus] = []
    if not issuer_match:
        status.append(CertStatus.NON_CCMS)
    if expired:
        status.append(CertStatus.EXPIRED)
    if not chain_verified:
        status.append(CertStatus.UNVERIFIED)
    return tuple(status)


def build_record(
    path: str,
    cert: ParsedCertificate,
    trust_set: TrustSet,
    chain_verified: bool,
    now: datetime | None = None,
) -> CertificateRecord:
    now = now or datetime.now(UTC)
    issuer_match = trust_set.allows(cert.issuer)
    expired = now > cert.not_after
    # A certificate with missing metadata is real but cannot be vouched for
    verified = chain_verified and cert.serial is not None

    return CertificateRecord(
        path=path,
        cert_type="ca" if cert.is_ca else "leaf",
        subject=cert.subject,
        issuer=cert.issuer,
        not_before=cert.not_before,
        not_after=cert.not_after,
        serial=cert.serial,
        fingerprint=cert.fingerprint,
        issuer_match=issuer_match,
        chain_verified=chain_verified,
        status=compose_status(issuer_match, expired, verified),
    )


def _parse(path: str, backend: CertificateBackend) -> ParsedCertificate | None:
    try:
        return backend.parse_certificate(path)
    except ParseSkip as e:
        logger.debug("Skipping %s", e)
        return None


def _verify(path: str, trust_set: TrustSet, backend: CertificateBackend) -> bool:
    try:
        return backend.verify_chain(path, trust_set)
    except ClassificationFailure as e:
        logger.warning("Chain check incomplete for %s", e)
        return False


def classify_certificate(
    path: str,
    trust_set: TrustSet,
    backend: CertificateBackend,
    now: datetime | None = None,
) -> CertificateRecord | None:
    """Classify one file. Returns None if the file is not a certificate."""
    cert = _parse(path, backend)
    if cert is None:
        return None
    return build_record(path, cert, trust_set, _verify(path, trust_set, backend), now)


async def classify_all(
    paths: Iterable[str],
    trust_set: TrustSet,
    backend: CertificateBackend,
    workers: int = DEFAULT_WORKERS,
    timeout: float = DEFAULT_TIMEOUT,
    sink: list[CertificateRecord] | None = None,
) -> list[CertificateRecord]:
    """Classify paths on a dedicated pool of `workers` threads.

    Each worker slot owns one pool thread for as long as its check runs, so
    the `timeout` clock only covers a chain check that is actually running.
    A certificate whose chain check exceeds `timeout` is still recorded, as
    UNVERIFIED, and its slot stays taken until the straggling thread returns.
    Workers hand records to a single collector through a queue; the
    collector is the only writer of `sink`.
    """
    records = sink if sink is not None else []
    results: asyncio.Queue[CertificateRecord | None] = asyncio.Queue()
    semaphore = asyncio.Semaphore(workers)
    loop = asyncio.get_running_loop()
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ccms-classify")

    async def _collect() -> None:
        while True:
            record = await results.get()
            if record is None:
                return
            records.append(record)

    async def _classify(path: str) -> None:
        async with semaphore:
            cert = await loop.run_in_executor(pool, _parse, path, backend)
            if cert is None:
                return
            check = loop.run_in_executor(pool, _verify, path, trust_set, backend)
            try:
                chain_verified = await asyncio.wait_for(asyncio.shield(check), timeout)
            except TimeoutError:
                logger.warning("Chain check for %s timed out after %gs", path, timeout)
                await results.put(build_record(path, cert, trust_set, chain_verified=False))
                await check
                return
        await results.put(build_record(path, cert, trust_set, chain_verified))

    collector = asyncio.create_task(_collect())
    try:
        await asyncio.gather(*(_classify(p) for p in paths))
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
        # Drain whatever was produced, even when cancelled
        results.put_nowait(None)
        await asyncio.shield(collector)
    return records
