"""Report aggregator — fold records into an AuditReport and write the artifacts."""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel

from ccms_audit.core.backend import format_openssl_date
from ccms_audit.core.base import (
    AnchorFinding,
    AuditReport,
    CertificateRecord,
    CertStatus,
    StatusCounts,
    TrustSet,
)
from ccms_audit.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

EXIT_COMPLIANT = 0
EXIT_NON_COMPLIANT = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

CSV_HEADER = [
    "Path",
    "Type",
    "Subject",
    "Issuer",
    "NotBefore",
    "NotAfter",
    "Serial",
    "SHA256",
    "IssuerMatch",
    "ChainVerified",
    "Status",
]


class ReportPaths(BaseModel):
    csv: Path
    findings: Path
    summary: Path
    bundle: Path
    allowlist: Path

    @classmethod
    def for_dir(cls, output_dir: Path) -> ReportPaths:
        return cls(
            csv=output_dir / "cert_inventory.csv",
            findings=output_dir / "non_ccms_findings.txt",
            summary=output_dir / "summary.txt",
            bundle=output_dir / "ccms_bundle.pem",
            allowlist=output_dir / "ccms_allow_issuers.txt",
        )


def build_report(
    records: Iterable[CertificateRecord],
    anchor_findings: Iterable[AnchorFinding],
    partial: bool = False,
) -> AuditReport:
    """Deduplicate records by path, sort them, and count each status category."""
    by_path: dict[str, CertificateRecord] = {}
    for record in records:
        by_path.setdefault(record.path, record)
    ordered = [by_path[p] for p in sorted(by_path)]
    anchors = sorted(anchor_findings, key=lambda a: (a.path, a.subject))

    counts = StatusCounts(
        total=len(ordered),
        non_ok=sum(1 for r in ordered if not r.is_ok),
        non_ccms=sum(1 for r in ordered if r.has(CertStatus.NON_CCMS)),
        expired=sum(1 for r in ordered if r.has(CertStatus.EXPIRED)),
        unverified=sum(1 for r in ordered if r.has(CertStatus.UNVERIFIED)),
        non_ccms_anchors=len(anchors),
    )
    return AuditReport(records=ordered, anchor_findings=anchors, counts=counts, partial=partial)


def exit_code(report: AuditReport) -> int:
    """0 only when no record is non-OK and no anchor finding exists."""
    return EXIT_COMPLIANT if report.compliant else EXIT_NON_COMPLIANT


def _flag(value: bool) -> str:
    return "YES" if value else "NO"


def csv_row(record: CertificateRecord) -> list[str]:
    return [
        record.path,
        record.cert_type,
        record.subject,
        record.issuer,
        format_openssl_date(record.not_before),
        format_openssl_date(record.not_after),
        record.serial or "",
        record.fingerprint,
        _flag(record.issuer_match),
        _flag(record.chain_verified),
        record.status_label,
    ]


def render_findings(report: AuditReport) -> str:
    blocks: list[str] = []
    for record in report.non_compliant:
        blocks.append(
            f"==== {record.path} ====\n"
            f"Subject : {record.subject}\n"
            f"Issuer  : {record.issuer}\n"
            f"Expires : {format_openssl_date(record.not_after)}\n"
            f"SHA256  : {record.fingerprint}\n"
            f"Status  : {record.status_label}\n"
        )
    for anchor in report.anchor_findings:
        blocks.append(f"Anchor: {anchor.path}\nSubject: {anchor.subject}\n")
    return "\n".join(blocks) + ("\n" if blocks else "")


def render_summary(report: AuditReport, paths: ReportPaths | None = None) -> str:
    c = report.counts
    lines = []
    if report.partial:
        lines += ["PARTIAL RUN: interrupted before all certificates were checked", ""]
    lines += [
        f"Total cert files checked: {c.total}",
        f"Non-OK statuses       : {c.non_ok}",
        f"  - NON_CCMS          : {c.non_ccms}",
        f"  - EXPIRED           : {c.expired}",
        f"  - UNVERIFIED chain  : {c.unverified}",
        f"Non-CCMS trust anchors: {c.non_ccms_anchors}",
    ]
    if paths is not None:
        lines += [
            "",
            f"CSV report : {paths.csv}",
            f"Findings   : {paths.findings}",
            f"CCMS bundle: {paths.bundle}",
            f"Allowlist  : {paths.allowlist}",
        ]
    return "\n".join(lines) + "\n"


def ensure_output_dir(output_dir: Path) -> None:
    """Create the output directory or fail before any scanning starts."""
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        probe = output_dir / ".ccms-audit-write-test"
        probe.touch()
        probe.unlink()
    except OSError as e:
        raise ConfigurationError(f"Output directory not writable: {output_dir} ({e})") from e


def write_trust_artifacts(trust_set: TrustSet, output_dir: Path) -> ReportPaths:
    """Write the combined bundle and the sorted allowlist for inspection and reuse."""
    paths = ReportPaths.for_dir(output_dir)
    paths.bundle.write_bytes(trust_set.bundle)
    paths.allowlist.write_text("".join(f"{name}\n" for name in sorted(trust_set.allowed_names)))
    return paths


def write_report(report: AuditReport, trust_set: TrustSet, output_dir: Path) -> ReportPaths:
    """Write the CSV inventory, findings listing, summary and trust artifacts."""
    paths = write_trust_artifacts(trust_set, output_dir)

    with open(paths.csv, "w", newline="") as f:
        # Bare header, quoted data rows
        f.write(",".join(CSV_HEADER) + "\n")
        writer = csv.writer(f, quoting=csv.QUOTE_ALL, lineterminator="\n")
        for record in report.records:
            writer.writerow(csv_row(record))

    paths.findings.write_text(render_findings(report))
    paths.summary.write_text(render_summary(report, paths))

    logger.info("Report written to %s", output_dir)
    return paths
