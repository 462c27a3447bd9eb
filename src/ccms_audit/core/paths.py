"""Bundled data directory resolution."""

from __future__ import annotations

from pathlib import Path

# src/ccms_audit/core/paths.py → src/ccms_audit/data/
DATA_DIR = Path(__file__).resolve().parent.parent / "data"
