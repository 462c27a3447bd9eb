"""Trust bundle builder — turn a directory of CCMS CA certificates into a TrustSet."""

from __future__ import annotations

import logging
from pathlib import Path

from ccms_audit.core.backend import CertificateBackend, der_to_pem
from ccms_audit.core.base import TrustSet
from ccms_audit.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def build_trust_set(trust_dir: Path, backend: CertificateBackend) -> TrustSet:
    """Build the trust bundle and allowlist from the files directly in trust_dir.

    Both subject and issuer of every trusted certificate are allowed, since a
    trusted intermediate's subject is the issuer of the leaves it signs.
    """
    if not trust_dir.is_dir():
        raise ConfigurationError(
            f"Trust directory not found: {trust_dir}. "
            "Place your CCMS root and intermediate CA certificates there."
        )

    bundle = bytearray()
    names: set[str] = set()
    anchors: list[bytes] = []
    sources: list[str] = []

    try:
        entries = sorted(trust_dir.iterdir())
    except OSError as e:
        raise ConfigurationError(f"Cannot read trust directory {trust_dir}: {e}") from e

    for path in entries:
        if not path.is_file():
            continue
        certs = backend.load_certificates(str(path))
        if not certs:
            logger.debug("No certificates in %s", path)
            continue
        sources.append(str(path))
        for cert in certs:
            if cert.der in anchors:
                continue
            anchors.append(cert.der)
            bundle += der_to_pem(cert.der)
            names.add(cert.subject)
            names.add(cert.issuer)

    if not anchors:
        raise ConfigurationError(
            f"No CCMS certificates found under {trust_dir}. Add your CCMS CA certs and retry."
        )

    logger.info("Trust set: %d certificates, %d allowed names", len(anchors), len(names))
    return TrustSet(
        bundle=bytes(bundle),
        allowed_names=frozenset(names),
        anchors=tuple(anchors),
        source_files=tuple(sources),
    )
