"""Certificate discovery — filesystem walk, service configs, and certmonger.

Every source is an independent best-effort producer. Their results are
merged into one path set, optionally filtered by a parse, so a path reached
from several sources is classified exactly once.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
import shutil
import subprocess
from collections import deque
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import TypedDict, TypeVar

import yaml

from ccms_audit.core.backend import CertificateBackend
from ccms_audit.core.base import DiscoverySource
from ccms_audit.core.config import AuditSettings
from ccms_audit.core.errors import SourceUnavailable, TransientIOFailure
from ccms_audit.core.paths import DATA_DIR

logger = logging.getLogger(__name__)

CERT_PATTERNS = ("*.pem", "*.crt")

# Largest config file we are willing to scan for directives
_MAX_CONFIG_BYTES = 2 * 1024 * 1024

_CERTMONGER_LOCATION_RE = re.compile(r"^\s*certificate:\s*type=FILE,location='([^']+)'")

T = TypeVar("T")


class _ServiceDef(TypedDict):
    name: str
    display_name: str
    location: str
    directives: str


def _load_services() -> list[_ServiceDef]:
    path = DATA_DIR / "services.yaml"
    with open(path) as f:
        data = yaml.safe_load(f)
    return data["services"]


SERVICE_DEFS = _load_services()


def is_cert_name(name: str) -> bool:
    lower = name.lower()
    return any(fnmatch.fnmatch(lower, pattern) for pattern in CERT_PATTERNS)


def normalize_path(path: str | Path) -> str:
    return os.path.abspath(os.path.normpath(str(path)))


def _with_retry(op: Callable[[], T], path: str, default: T) -> T:
    """Run an I/O operation, retrying once on TransientIOFailure."""
    for attempt in (1, 2):
        try:
            return op()
        except TransientIOFailure as e:
            if attempt == 2:
                logger.warning("Dropping %s after retry: %s", path, e.cause)
            else:
                logger.debug("Retrying %s: %s", path, e.cause)
    return default


def _scan_dir(path: str) -> list[os.DirEntry[str]]:
    try:
        with os.scandir(path) as it:
            return list(it)
    except OSError as e:
        raise TransientIOFailure(path, e) from e


def _read_text(path: str) -> str:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read(_MAX_CONFIG_BYTES)
    except OSError as e:
        raise TransientIOFailure(path, e) from e


def walk_files(
    root: str | Path,
    max_depth: int | None = None,
    match: Callable[[str], bool] | None = None,
) -> Iterator[str]:
    """Yield regular files under root, breadth first.

    Depth follows `find -maxdepth`: entries directly inside root are depth 1.
    Symlinked directories are not descended into.
    """
    root = str(root)
    if os.path.isfile(root):
        if match is None or match(os.path.basename(root)):
            yield root
        return

    queue: deque[tuple[str, int]] = deque([(root, 0)])
    while queue:
        directory, depth = queue.popleft()
        if max_depth is not None and depth >= max_depth:
            continue
        entries = _with_retry(lambda d=directory: _scan_dir(d), directory, [])
        for entry in sorted(entries, key=lambda e: e.name):
            try:
                if entry.is_dir(follow_symlinks=False):
                    queue.append((entry.path, depth + 1))
                elif entry.is_file() and (match is None or match(entry.name)):
                    yield entry.path
            except OSError as e:
                logger.debug("Skipping %s: %s", entry.path, e)


def extract_paths(line: str, base_dir: str) -> list[str]:
    """Pull path-like tokens out of one config line.

    Handles quotes, trailing `;`, Dovecot's `<` include prefix and
    `key=/path` assignments. Relative paths resolve against base_dir.
    """
    paths: list[str] = []
    for token in line.split():
        token = token.strip("\"';,")
        if "=" in token:
            token = token.split("=", 1)[1]
        token = token.lstrip("<").strip("\"'")
        if "/" not in token or token.startswith("$"):
            continue
        if not os.path.isabs(token):
            token = os.path.join(base_dir, token)
        paths.append(normalize_path(token))
    return paths


class FilesystemSource(DiscoverySource):
    name = "filesystem"
    display_name = "Filesystem scan"
    description = "Walk the scan roots for *.pem and *.crt files"

    def location(self, settings: AuditSettings) -> str:
        roots = " ".join(str(p) for p in settings.scan_roots)
        if settings.max_depth is not None:
            roots += f" (maxdepth {settings.max_depth})"
        return roots

    def is_present(self, settings: AuditSettings) -> bool:
        return any(p.exists() for p in settings.scan_roots)

    def discover(self, settings: AuditSettings) -> set[str]:
        found: set[str] = set()
        for root in settings.scan_roots:
            if not root.exists():
                logger.debug("Scan root %s does not exist", root)
                continue
            for path in walk_files(root, settings.max_depth, is_cert_name):
                found.add(normalize_path(path))
        return found


class ServiceConfigSource(DiscoverySource):
    """Certificate references in one service's configuration."""

    def __init__(self, definition: _ServiceDef) -> None:
        self.name = definition["name"]
        self.display_name = definition["display_name"]
        self.description = f"{definition['display_name']} TLS certificate directives"
        self.setting = definition["location"]
        self.directives = re.compile(definition["directives"], re.IGNORECASE)

    def config_path(self, settings: AuditSettings) -> Path:
        return Path(getattr(settings, self.setting))

    def location(self, settings: AuditSettings) -> str:
        return str(self.config_path(settings))

    def is_present(self, settings: AuditSettings) -> bool:
        return self.config_path(settings).exists()

    def _matching_lines(self, config_file: str) -> list[str]:
        text = _with_retry(lambda: _read_text(config_file), config_file, "")
        return [
            line
            for line in text.splitlines()
            if not line.lstrip().startswith("#") and self.directives.search(line)
        ]

    def references(self, settings: AuditSettings) -> set[str]:
        """Paths named by directives, whether or not they exist."""
        config = self.config_path(settings)
        if not config.exists():
            raise SourceUnavailable(self.name, str(config))

        base_dir = str(config if config.is_dir() else config.parent)
        refs: set[str] = set()
        for config_file in walk_files(config):
            for line in self._matching_lines(config_file):
                refs.update(extract_paths(line, base_dir))
        return refs

    def discover(self, settings: AuditSettings) -> set[str]:
        try:
            refs = self.references(settings)
        except SourceUnavailable as e:
            logger.info("Skipping %s", e)
            return set()

        found: set[str] = set()
        for ref in refs:
            if os.path.isfile(ref):
                found.add(ref)
            elif os.path.isdir(ref):
                # e.g. TLS_CACERTDIR, ssl_client_ca_dir
                found.update(normalize_path(p) for p in walk_files(ref, 1))
        if found:
            logger.info("%s references %d certificate path(s)", self.display_name, len(found))
        return found


class CertmongerSource(DiscoverySource):
    name = "certmonger"
    display_name = "certmonger"
    description = "Certificates tracked by certmonger (getcert list)"

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    def location(self, settings: AuditSettings) -> str:
        return shutil.which("getcert") or "getcert (not installed)"

    def is_present(self, settings: AuditSettings) -> bool:
        return shutil.which("getcert") is not None

    def discover(self, settings: AuditSettings) -> set[str]:
        getcert = shutil.which("getcert")
        if getcert is None:
            logger.debug("getcert not installed, skipping certmonger")
            return set()

        try:
            result = subprocess.run(
                [getcert, "list"], capture_output=True, text=True, timeout=self.timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Skipping %s", SourceUnavailable(self.name, getcert, str(e)))
            return set()
        if result.returncode != 0:
            logger.warning(
                "Skipping %s",
                SourceUnavailable(self.name, getcert, f"exit status {result.returncode}"),
            )
            return set()

        found: set[str] = set()
        for line in result.stdout.splitlines():
            match = _CERTMONGER_LOCATION_RE.match(line)
            if match and os.path.isfile(match.group(1)):
                found.add(normalize_path(match.group(1)))
        return found


def get_sources(timeout: float = 30.0) -> list[DiscoverySource]:
    """All discovery sources in the order they are consulted."""
    return [
        FilesystemSource(),
        *(ServiceConfigSource(d) for d in SERVICE_DEFS),
        CertmongerSource(timeout=timeout),
    ]


def discover_certificates(
    settings: AuditSettings,
    backend: CertificateBackend,
    sources: list[DiscoverySource] | None = None,
    probe: bool = True,
) -> list[str]:
    """Merge every source into one deduplicated, sorted path list.

    With `probe`, files that do not parse as a certificate are dropped here.
    The audit runner turns it off and lets the classifier pool do that parse.
    """
    if sources is None:
        sources = get_sources(settings.timeout)

    candidates: set[str] = set()
    for source in sources:
        try:
            paths = source.discover(settings)
        except OSError as e:
            logger.warning("Discovery source %s failed: %s", source.name, e)
            continue
        logger.debug("%s: %d candidate(s)", source.name, len(paths))
        candidates |= paths

    if not probe:
        logger.info("Discovered %d candidate file(s)", len(candidates))
        return sorted(candidates)

    queue = sorted(p for p in candidates if backend.probe(p))
    logger.info("Discovered %d certificate file(s) from %d candidate(s)", len(queue), len(candidates))
    return queue
