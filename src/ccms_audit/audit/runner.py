"""Audit orchestration — trust set and discovery first, then classification and anchors."""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel

from ccms_audit.audit.anchors import audit_trust_anchors
from ccms_audit.audit.classifier import classify_all
from ccms_audit.audit.discovery import discover_certificates
from ccms_audit.audit.report import ReportPaths, build_report, ensure_output_dir, write_report
from ccms_audit.audit.trust import build_trust_set
from ccms_audit.core.backend import CertificateBackend, get_backend
from ccms_audit.core.base import AnchorFinding, AuditReport, CertificateRecord, DiscoverySource
from ccms_audit.core.config import AuditSettings

logger = logging.getLogger(__name__)


class AuditOutcome(BaseModel):
    report: AuditReport
    paths: ReportPaths


def _finished_anchor_findings(
    task: asyncio.Task[list[AnchorFinding]] | None,
) -> list[AnchorFinding]:
    """Findings of an anchor audit that completed before an interruption."""
    if task is None:
        return []
    if not task.done():
        task.cancel()
        return []
    if task.cancelled() or task.exception() is not None:
        return []
    return task.result()


async def run_audit(
    settings: AuditSettings,
    backend: CertificateBackend | None = None,
    sources: list[DiscoverySource] | None = None,
) -> AuditOutcome:
    """Run the full pipeline and write the report.

    Raises ConfigurationError before any scanning if the run cannot proceed.
    If cancelled once scanning has begun, a partial report is written from
    the records and anchor findings collected so far before the cancellation
    propagates.
    """
    backend = backend or get_backend(settings.backend, settings.timeout)
    backend.check_available()
    ensure_output_dir(settings.output_dir)

    trust_set = build_trust_set(settings.trust_dir, backend)

    records: list[CertificateRecord] = []
    candidates: list[str] = []
    anchors_task: asyncio.Task[list[AnchorFinding]] | None = None
    try:
        # Non-certificates are dropped by the classifier's own parse
        candidates = await asyncio.to_thread(
            discover_certificates, settings, backend, sources, probe=False
        )
        anchors_task = asyncio.create_task(
            asyncio.to_thread(audit_trust_anchors, settings.anchor_dir, trust_set, backend)
        )
        await classify_all(
            candidates,
            trust_set,
            backend,
            workers=settings.parallelism,
            timeout=settings.timeout,
            sink=records,
        )
        anchor_findings = await anchors_task
    except asyncio.CancelledError:
        logger.warning(
            "Interrupted after %d certificate(s) from %d candidate(s)", len(records), len(candidates)
        )
        report = build_report(records, _finished_anchor_findings(anchors_task), partial=True)
        write_report(report, trust_set, settings.output_dir)
        raise

    report = build_report(records, anchor_findings)
    paths = write_report(report, trust_set, settings.output_dir)
    return AuditOutcome(report=report, paths=paths)
