"""Configuration loading — environment variables, then an optional TOML file, then defaults."""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ccms_audit.core.errors import ConfigurationError

DEFAULT_CONFIG_PATHS = [
    Path.home() / ".config" / "ccms-audit" / "config.toml",
    Path("ccms-audit.toml"),
]

BACKENDS = ("native", "openssl")

# setting name -> environment variable
ENV_VARS: dict[str, str] = {
    "trust_dir": "CCMS_DIR",
    "output_dir": "OUTPUT_DIR",
    "scan_paths": "SCAN_PATHS",
    "extra_scan_paths": "EXTRA_SCAN_PATHS",
    "max_depth": "FIND_MAXDEPTH",
    "parallelism": "PARALLELISM",
    "timeout": "CCMS_TIMEOUT",
    "backend": "CCMS_BACKEND",
    "apache_conf_dir": "APACHE_CONF_DIR",
    "nginx_conf_dir": "NGINX_CONF_DIR",
    "postfix_main_cf": "POSTFIX_MAIN_CF",
    "dovecot_conf_dir": "DOVECOT_CONF_DIR",
    "openldap_client_conf": "OPENLDAP_CLIENT_CONF",
    "trust_store_dir": "TRUST_STORE_DIR",
}

_LIST_SETTINGS = {"scan_paths", "extra_scan_paths"}


class AuditSettings(BaseModel):
    """Resolved settings for one audit run."""

    trust_dir: Path = Path("/root/ccms-trusted")
    output_dir: Path = Path("/root/ccms_audit")
    scan_paths: list[Path] = Field(
        default_factory=lambda: [Path("/etc"), Path("/usr/local"), Path("/var")]
    )
    extra_scan_paths: list[Path] = Field(default_factory=list)
    max_depth: int | None = Field(default=None, ge=0)
    parallelism: int = Field(default=4, ge=1)
    timeout: float = Field(default=30.0, gt=0)
    backend: str = "native"
    apache_conf_dir: Path = Path("/etc/httpd")
    nginx_conf_dir: Path = Path("/etc/nginx")
    postfix_main_cf: Path = Path("/etc/postfix/main.cf")
    dovecot_conf_dir: Path = Path("/etc/dovecot")
    openldap_client_conf: Path = Path("/etc/openldap/ldap.conf")
    trust_store_dir: Path = Path("/etc/pki/ca-trust")

    @property
    def scan_roots(self) -> list[Path]:
        return [*self.scan_paths, *self.extra_scan_paths]

    @property
    def anchor_dir(self) -> Path:
        return self.trust_store_dir / "source" / "anchors"


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load the [audit] table from a TOML file.

    Searches default paths if no explicit path is given.
    Returns an empty dict if no config file is found.
    """
    paths = [path] if path is not None else DEFAULT_CONFIG_PATHS

    for p in paths:
        if p.exists():
            try:
                with open(p, "rb") as f:
                    data = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigurationError(f"Cannot read config file {p}: {e}") from e
            return dict(data.get("audit", data))

    return {}


def _parse_max_depth(value: str) -> int | None:
    """Accept '6' as well as the find-style '-maxdepth 6'."""
    value = value.strip()
    if not value:
        return None
    match = re.fullmatch(r"(?:-maxdepth\s+)?(\d+)", value)
    if match is None:
        raise ConfigurationError(f"Invalid FIND_MAXDEPTH value: {value!r}")
    return int(match.group(1))


def _from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for setting, var in ENV_VARS.items():
        raw = environ.get(var)
        if raw is None:
            continue
        if setting in _LIST_SETTINGS:
            values[setting] = raw.split()
        elif setting == "max_depth":
            values[setting] = _parse_max_depth(raw)
        elif raw.strip():
            values[setting] = raw.strip()
    return values


def get_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> AuditSettings:
    """Resolve settings: explicit overrides → env vars → config.toml → defaults."""
    values = load_config(config_path)
    values.update(_from_env(os.environ if environ is None else environ))
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        settings = AuditSettings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if settings.backend not in BACKENDS:
        raise ConfigurationError(
            f"Unknown backend {settings.backend!r}. Available: {', '.join(BACKENDS)}"
        )
    return settings
