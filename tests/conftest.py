"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from ccms_audit.core.config import AuditSettings


@dataclass
class Issued:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    def pem(self) -> bytes:
        return self.cert.public_bytes(Encoding.PEM)

    def der(self) -> bytes:
        return self.cert.public_bytes(Encoding.DER)


def _name(cn: str, org: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, org),
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
        ]
    )


class CertFactory:
    """Mint small EC certificates for tests."""

    def issue(
        self,
        cn: str,
        issuer: Issued | None = None,
        *,
        ca: bool = False,
        org: str = "CCMS",
        expired: bool = False,
        serial: int | None = None,
    ) -> Issued:
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(UTC)
        if expired:
            not_before, not_after = now - timedelta(days=730), now - timedelta(days=365)
        else:
            not_before, not_after = now - timedelta(days=1), now + timedelta(days=365)

        subject = _name(cn, org)
        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer.cert.subject if issuer else subject)
            .public_key(key.public_key())
            .serial_number(serial if serial is not None else x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        )
        signing_key = issuer.key if issuer else key
        return Issued(cert=builder.sign(signing_key, hashes.SHA256()), key=key)

    def duplicate_extension_der(self, cn: str = "dup.example.com") -> bytes:
        """DER of a self-signed certificate carrying the same extension OID twice."""
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(UTC)
        name = _name(cn, "Elsewhere")
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(
                x509.UnrecognizedExtension(x509.ObjectIdentifier("1.2.3.4.1"), b"\x05\x00"),
                critical=False,
            )
            .add_extension(
                x509.UnrecognizedExtension(x509.ObjectIdentifier("1.2.3.4.2"), b"\x05\x00"),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )
        # Rewrite the second OID into the first; both encode to the same length
        der = cert.public_bytes(Encoding.DER)
        return der.replace(b"\x06\x04\x2a\x03\x04\x02", b"\x06\x04\x2a\x03\x04\x01")

    def root(self, cn: str = "CCMS Root CA", org: str = "CCMS") -> Issued:
        return self.issue(cn, ca=True, org=org)

    def write(self, path: Path, *issued: Issued) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"".join(i.pem() for i in issued))
        return path


@pytest.fixture
def certs() -> CertFactory:
    return CertFactory()


@pytest.fixture
def ccms_root(certs: CertFactory) -> Issued:
    return certs.root()


@pytest.fixture
def trust_dir(tmp_path: Path, certs: CertFactory, ccms_root: Issued) -> Path:
    """A trust directory holding only the CCMS root."""
    directory = tmp_path / "ccms-trusted"
    certs.write(directory / "root.pem", ccms_root)
    return directory


@pytest.fixture
def make_settings(tmp_path: Path):
    """Build AuditSettings whose every location lives under tmp_path."""

    def _make(**overrides) -> AuditSettings:
        values = {
            "trust_dir": tmp_path / "ccms-trusted",
            "output_dir": tmp_path / "out",
            "scan_paths": [tmp_path / "scan"],
            "apache_conf_dir": tmp_path / "etc" / "httpd",
            "nginx_conf_dir": tmp_path / "etc" / "nginx",
            "postfix_main_cf": tmp_path / "etc" / "postfix" / "main.cf",
            "dovecot_conf_dir": tmp_path / "etc" / "dovecot",
            "openldap_client_conf": tmp_path / "etc" / "openldap" / "ldap.conf",
            "trust_store_dir": tmp_path / "etc" / "pki" / "ca-trust",
        }
        values.update(overrides)
        return AuditSettings(**values)

    return _make
