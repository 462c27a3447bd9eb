"""Trust-anchor auditor — find system anchors installed outside the CCMS set."""

from __future__ import annotations

import logging
from pathlib import Path

from ccms_audit.core.backend import CertificateBackend
from ccms_audit.core.base import AnchorFinding, TrustSet
from ccms_audit.core.errors import SourceUnavailable

logger = logging.getLogger(__name__)


def audit_trust_anchors(
    anchor_dir: Path, trust_set: TrustSet, backend: CertificateBackend
) -> list[AnchorFinding]:
    """Report every anchor directly under anchor_dir whose subject is not allowed."""
    if not anchor_dir.is_dir():
        logger.info("Skipping %s", SourceUnavailable("trust-anchors", str(anchor_dir)))
        return []

    try:
        entries = sorted(anchor_dir.iterdir())
    except OSError as e:
        logger.warning("Skipping %s", SourceUnavailable("trust-anchors", str(anchor_dir), str(e)))
        return []

    findings: list[AnchorFinding] = []
    for path in entries:
        if not path.is_file():
            continue
        for cert in backend.load_certificates(str(path)):
            if not trust_set.allows(cert.subject):
                findings.append(AnchorFinding(path=str(path), subject=cert.subject))

    logger.info("Trust anchors: %d non-CCMS finding(s) in %s", len(findings), anchor_dir)
    return findings
