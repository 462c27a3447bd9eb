"""Core data model — trust set, certificate records, and the audit report."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, computed_field

if TYPE_CHECKING:
    from ccms_audit.core.config import AuditSettings


class CertStatus(StrEnum):
    OK = "OK"
    NON_CCMS = "NON_CCMS"
    EXPIRED = "EXPIRED"
    UNVERIFIED = "UNVERIFIED"


# Order in which failing conditions appear in a composite status string
STATUS_ORDER: tuple[CertStatus, ...] = (
    CertStatus.NON_CCMS,
    CertStatus.EXPIRED,
    CertStatus.UNVERIFIED,
)


class TrustSet(BaseModel):
    """Trusted CA material for one run. Built once, never mutated."""

    model_config = ConfigDict(frozen=True)

    bundle: bytes
    allowed_names: frozenset[str]
    anchors: tuple[bytes, ...] = ()  # DER of each trusted certificate
    source_files: tuple[str, ...] = ()

    def allows(self, name: str) -> bool:
        return name in self.allowed_names


class ParsedCertificate(BaseModel):
    """Metadata a backend extracts from one certificate."""

    model_config = ConfigDict(frozen=True)

    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    serial: str | None  # None when the serial could not be extracted
    fingerprint: str
    is_ca: bool = False
    der: bytes = b""

    @property
    def self_signed(self) -> bool:
        return self.subject == self.issuer


class CertificateRecord(BaseModel):
    """Classification result for one discovered certificate file."""

    model_config = ConfigDict(frozen=True)

    path: str
    cert_type: str
    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    serial: str | None
    fingerprint: str
    issuer_match: bool
    chain_verified: bool
    status: tuple[CertStatus, ...] = ()  # empty means OK

    @property
    def is_ok(self) -> bool:
        return not self.status

    def has(self, flag: CertStatus) -> bool:
        return flag in self.status

    @property
    def status_label(self) -> str:
        """Composite status, e.g. 'NON_CCMS+EXPIRED', or 'OK'."""
        if not self.status:
            return CertStatus.OK.value
        return "+".join(s.value for s in STATUS_ORDER if s in self.status)


class AnchorFinding(BaseModel):
    """A system trust anchor whose subject is not in the compliance allowlist."""

    model_config = ConfigDict(frozen=True)

    path: str
    subject: str


class StatusCounts(BaseModel):
    total: int = 0
    non_ok: int = 0
    non_ccms: int = 0
    expired: int = 0
    unverified: int = 0
    non_ccms_anchors: int = 0


class AuditReport(BaseModel):
    """Everything one run produced. Built by the report aggregator."""

    records: list[CertificateRecord] = Field(default_factory=list)
    anchor_findings: list[AnchorFinding] = Field(default_factory=list)
    counts: StatusCounts = Field(default_factory=StatusCounts)
    partial: bool = False
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def non_compliant(self) -> list[CertificateRecord]:
        return [r for r in self.records if not r.is_ok]

    @property
    def compliant(self) -> bool:
        return self.counts.non_ok == 0 and self.counts.non_ccms_anchors == 0


class DiscoverySource(ABC):
    """One independent producer of candidate certificate paths."""

    name: str
    display_name: str
    description: str

    @abstractmethod
    def discover(self, settings: AuditSettings) -> set[str]:
        """Return candidate paths. Must not raise for a missing or unreadable source."""
        ...

    def location(self, settings: AuditSettings) -> str:
        """Human-readable description of where this source looks."""
        return ""

    def is_present(self, settings: AuditSettings) -> bool:
        """Whether the source exists on this host."""
        return True
