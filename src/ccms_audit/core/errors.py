"""Error taxonomy for the audit pipeline.

Only ConfigurationError aborts a run. The others degrade to "this file or
source contributes nothing" and are handled where they are raised.
"""

from __future__ import annotations


class ConfigurationError(Exception):
    """Raised when the audit cannot run at all (missing tool, trust dir, output dir)."""


class ParseSkip(Exception):
    """Raised when a file does not parse as an X.509 certificate."""

    def __init__(self, path: str, reason: str = "not a certificate") -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class ClassificationFailure(Exception):
    """Raised when a sub-check (chain verification) could not be completed."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class SourceUnavailable(Exception):
    """Raised when a discovery source's config file or directory is missing or unreadable."""

    def __init__(self, source: str, location: str, reason: str = "not found") -> None:
        self.source = source
        self.location = location
        super().__init__(f"{source}: {location} ({reason})")


class TransientIOFailure(Exception):
    """Raised when a directory listing or file read fails; callers retry once."""

    def __init__(self, path: str, cause: OSError) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"{path}: {cause}")
