"""Certificate backends — parse, verify, and fingerprint certificates.

The classifier only talks to CertificateBackend. NativeBackend uses the
`cryptography` library in-process; OpenSSLBackend shells out to the
`openssl` binary the way the RHEL audit scripts always have.
"""

from __future__ import annotations

import hashlib
import re
import shutil
import ssl
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.serialization import Encoding

from ccms_audit.core.base import ParsedCertificate, TrustSet
from ccms_audit.core.errors import ClassificationFailure, ConfigurationError, ParseSkip

# Certificate files larger than this are not worth probing
MAX_CERT_FILE_BYTES = 4 * 1024 * 1024

_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\s.+?\s-----END CERTIFICATE-----", re.DOTALL
)
_WHITESPACE_RE = re.compile(r"\s+")
_DN_SPECIALS_RE = re.compile(r'([\\,+"<>;])')

# openssl -startdate/-enddate format, e.g. "Jan  1 12:34:56 2025 GMT"
OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"


def _collapse(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def _escape_dn_value(value: str) -> str:
    value = _DN_SPECIALS_RE.sub(r"\\\1", value)
    if value.startswith("#"):
        value = "\\" + value
    return value


def normalize_name(name: x509.Name) -> str:
    """Render a distinguished name in a canonical RFC 4514 form.

    Most specific RDN first (as `openssl -nameopt RFC2253` prints it),
    multi-valued RDN members sorted, whitespace runs in values collapsed.
    """
    rdns: list[str] = []
    for rdn in reversed(name.rdns):
        members = []
        for attr in rdn:
            rendered = attr.rfc4514_string()
            if isinstance(attr.value, str):
                key = rendered.partition("=")[0]
                rendered = f"{key}={_escape_dn_value(_collapse(attr.value))}"
            members.append(rendered)
        rdns.append("+".join(sorted(members)))
    return ",".join(rdns)


def normalize_name_string(name: str) -> str:
    """Canonicalize an RFC 2253 name string printed by an external tool."""
    rdns = []
    for rdn in re.split(r"(?<!\\),", name.strip()):
        members = [_collapse(m) for m in re.split(r"(?<!\\)\+", rdn)]
        members = [
            f"{k.strip()}={_collapse(v)}" for k, _, v in (m.partition("=") for m in members)
        ]
        rdns.append("+".join(sorted(members)))
    return ",".join(r for r in rdns if r)


def format_serial(serial: int) -> str:
    """Upper-case hex, padded to an even number of digits (openssl -serial style)."""
    digits = f"{serial:X}"
    return digits if len(digits) % 2 == 0 else "0" + digits


def format_openssl_date(value: datetime) -> str:
    """Render a datetime the way `openssl x509 -enddate` does."""
    value = value.astimezone(UTC)
    return f"{value:%b} {value.day:2d} {value:%H:%M:%S %Y} GMT"


def sha256_fingerprint(der: bytes) -> str:
    return hashlib.sha256(der).hexdigest().upper()


def der_to_pem(der: bytes) -> bytes:
    return ssl.DER_cert_to_PEM_cert(der).encode("ascii")


def _read_cert_file(path: str) -> bytes:
    p = Path(path)
    try:
        if p.stat().st_size > MAX_CERT_FILE_BYTES:
            raise ParseSkip(path, "file too large")
        return p.read_bytes()
    except OSError as e:
        raise ParseSkip(path, f"unreadable: {e.strerror or e}") from e


class CertificateBackend(ABC):
    """Parse/verify/fingerprint capability used by the auditor."""

    name: str

    @abstractmethod
    def parse_certificate(self, path: str) -> ParsedCertificate:
        """Parse the first certificate in a file. Raises ParseSkip."""
        ...

    @abstractmethod
    def load_certificates(self, path: str) -> list[ParsedCertificate]:
        """Parse every certificate in a file. Returns an empty list if there are none."""
        ...

    @abstractmethod
    def verify_chain(self, path: str, trust_set: TrustSet) -> bool:
        """Check the certificate chains to any certificate in the trust bundle.

        Partial chains are accepted and validity dates are ignored.
        Raises ClassificationFailure if the check could not be completed.
        """
        ...

    def fingerprint(self, der: bytes) -> str:
        return sha256_fingerprint(der)

    def check_available(self) -> None:
        """Raise ConfigurationError if the backend cannot run on this host."""
        return None

    def probe(self, path: str) -> bool:
        try:
            self.parse_certificate(path)
        except ParseSkip:
            return False
        return True


# --- Native (cryptography) backend ---


def _load_x509(data: bytes) -> list[x509.Certificate]:
    if b"-----BEGIN CERTIFICATE-----" in data:
        return x509.load_pem_x509_certificates(data)
    return [x509.load_der_x509_certificate(data)]


@lru_cache(maxsize=8)
def _load_anchors(anchors: tuple[bytes, ...]) -> tuple[x509.Certificate, ...]:
    return tuple(x509.load_der_x509_certificate(der) for der in anchors)


def _can_issue(cert: x509.Certificate) -> bool:
    try:
        constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return True  # v1 roots carry no extensions
    except (x509.DuplicateExtension, ValueError):
        return False
    return constraints.value.ca


class NativeBackend(CertificateBackend):
    name = "native"

    def _describe(self, cert: x509.Certificate) -> ParsedCertificate:
        der = cert.public_bytes(Encoding.DER)
        # RFC 5280 serials are positive; anything else counts as missing metadata
        serial = format_serial(cert.serial_number) if cert.serial_number > 0 else None
        try:
            constraints = cert.extensions.get_extension_for_class(x509.BasicConstraints)
            is_ca = constraints.value.ca
        except (x509.ExtensionNotFound, x509.DuplicateExtension, ValueError):
            is_ca = False
        return ParsedCertificate(
            subject=normalize_name(cert.subject),
            issuer=normalize_name(cert.issuer),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            serial=serial,
            fingerprint=self.fingerprint(der),
            is_ca=is_ca,
            der=der,
        )

    def _first_x509(self, path: str) -> x509.Certificate:
        data = _read_cert_file(path)
        try:
            certs = _load_x509(data)
        except ValueError as e:
            raise ParseSkip(path) from e
        if not certs:
            raise ParseSkip(path)
        return certs[0]

    def parse_certificate(self, path: str) -> ParsedCertificate:
        cert = self._first_x509(path)
        try:
            return self._describe(cert)
        except (x509.DuplicateExtension, ValueError) as e:
            raise ParseSkip(path, f"malformed certificate: {e}") from e

    def load_certificates(self, path: str) -> list[ParsedCertificate]:
        try:
            certs = _load_x509(_read_cert_file(path))
        except (ParseSkip, ValueError):
            return []
        parsed = []
        for cert in certs:
            try:
                parsed.append(self._describe(cert))
            except (x509.DuplicateExtension, ValueError):
                continue
        return parsed

    def verify_chain(self, path: str, trust_set: TrustSet) -> bool:
        try:
            leaf = self._first_x509(path)
        except ParseSkip as e:
            raise ClassificationFailure(path, e.reason) from e

        leaf_der = leaf.public_bytes(Encoding.DER)
        anchors = _load_anchors(trust_set.anchors)

        # A certificate that is itself in the bundle is a trust anchor
        if any(anchor.public_bytes(Encoding.DER) == leaf_der for anchor in anchors):
            return True

        for anchor in anchors:
            if not _can_issue(anchor):
                continue
            try:
                leaf.verify_directly_issued_by(anchor)
            except (ValueError, TypeError, InvalidSignature):
                continue
            return True
        return False


# --- OpenSSL CLI backend ---


def _parse_openssl_date(value: str) -> datetime:
    return datetime.strptime(_collapse(value), OPENSSL_DATE_FORMAT).replace(tzinfo=UTC)


def _parse_x509_text(text: str, der: bytes, path: str) -> ParsedCertificate:
    """Parse `openssl x509 -noout -subject -issuer ...` output."""
    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            fields.setdefault(key.strip().lower(), value.strip())

    try:
        return ParsedCertificate(
            subject=normalize_name_string(fields["subject"]),
            issuer=normalize_name_string(fields["issuer"]),
            not_before=_parse_openssl_date(fields["notbefore"]),
            not_after=_parse_openssl_date(fields["notafter"]),
            serial=fields.get("serial") or None,
            fingerprint=fields["sha256 fingerprint"].replace(":", "").upper(),
            is_ca="CA:TRUE" in text,
            der=der,
        )
    except (KeyError, ValueError) as e:
        raise ParseSkip(path, f"incomplete openssl output: {e}") from e


class OpenSSLBackend(CertificateBackend):
    name = "openssl"

    def __init__(self, timeout: float = 30.0, binary: str = "openssl") -> None:
        self.timeout = timeout
        self.binary = binary
        self._bundle_files: dict[str, Path] = {}
        self._bundle_dir: tempfile.TemporaryDirectory[str] | None = None
        self._lock = threading.Lock()

    def check_available(self) -> None:
        if shutil.which(self.binary) is None:
            raise ConfigurationError(f"Missing dependency: {self.binary}")

    def _run(self, args: list[str], data: bytes | None = None) -> subprocess.CompletedProcess[bytes]:
        return subprocess.run(
            [self.binary, *args],
            input=data,
            capture_output=True,
            timeout=self.timeout,
        )

    def _parse(self, source: list[str], path: str, data: bytes | None = None) -> ParsedCertificate:
        try:
            fields = self._run(
                [
                    "x509",
                    *source,
                    "-noout",
                    "-subject",
                    "-issuer",
                    "-startdate",
                    "-enddate",
                    "-serial",
                    "-fingerprint",
                    "-sha256",
                    "-ext",
                    "basicConstraints",
                    "-nameopt",
                    "RFC2253",
                ],
                data,
            )
            der = self._run(["x509", *source, "-outform", "DER"], data)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ParseSkip(path, f"openssl failed: {e}") from e

        if fields.returncode != 0 or der.returncode != 0 or not der.stdout:
            raise ParseSkip(path)
        return _parse_x509_text(fields.stdout.decode("utf-8", errors="replace"), der.stdout, path)

    def parse_certificate(self, path: str) -> ParsedCertificate:
        try:
            return self._parse(["-in", path], path)
        except ParseSkip:
            return self._parse(["-inform", "DER", "-in", path], path)

    def load_certificates(self, path: str) -> list[ParsedCertificate]:
        try:
            data = _read_cert_file(path)
        except ParseSkip:
            return []

        blocks = _PEM_CERT_RE.findall(data)
        if not blocks:
            try:
                return [self.parse_certificate(path)]
            except ParseSkip:
                return []

        parsed = []
        for block in blocks:
            try:
                parsed.append(self._parse([], path, data=block + b"\n"))
            except ParseSkip:
                continue
        return parsed

    def _bundle_file(self, trust_set: TrustSet) -> Path:
        key = sha256_fingerprint(trust_set.bundle)
        with self._lock:
            if key not in self._bundle_files:
                if self._bundle_dir is None:
                    self._bundle_dir = tempfile.TemporaryDirectory(prefix="ccms-audit-")
                bundle_path = Path(self._bundle_dir.name) / f"{key[:16]}.pem"
                bundle_path.write_bytes(trust_set.bundle)
                self._bundle_files[key] = bundle_path
            return self._bundle_files[key]

    def verify_chain(self, path: str, trust_set: TrustSet) -> bool:
        bundle = self._bundle_file(trust_set)
        for purpose in ("sslserver", "any"):
            try:
                result = self._run(
                    [
                        "verify",
                        "-CAfile",
                        str(bundle),
                        "-partial_chain",
                        "-no_check_time",
                        "-purpose",
                        purpose,
                        path,
                    ]
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise ClassificationFailure(path, f"openssl verify failed: {e}") from e
            if result.returncode == 0:
                return True
        return False


def get_backend(name: str = "native", timeout: float = 30.0) -> CertificateBackend:
    """Build the named backend ("native" or "openssl")."""
    if name == "native":
        return NativeBackend()
    if name == "openssl":
        return OpenSSLBackend(timeout=timeout)
    raise ConfigurationError(f"Unknown backend: {name}")
