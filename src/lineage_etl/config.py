"""lineage_etl.config

YAML settings for the workbook import pipeline.

Usage:
    from pathlib import Path
    from lineage_etl.config import load_settings

    settings = load_settings(Path("config/import.yml"))
    settings.batch_size   # -> 50
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SETTINGS_PATH = Path(__file__).parent.parent.parent / "config" / "import.yml"

_POSITIVE_INT_KEYS = (
    "batch_size",
    "statement_timeout_ms",
    "max_lifespan_years",
    "running_guard_minutes",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SettingsValidationError(ValueError):
    """Raised when an import settings file fails validation."""


# ---------------------------------------------------------------------------
# ImportSettings dataclass
# ---------------------------------------------------------------------------

@dataclass
class ImportSettings:
    source_system: str = "LOYD_BOOK_2022"
    batch_size: int = 50
    statement_timeout_ms: int = 30_000
    max_lifespan_years: int = 120
    running_guard_minutes: int = 60
    yaml_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_settings(yaml_path: Path | None = None) -> ImportSettings:
    """Load and validate ImportSettings from a YAML file.

    Keys missing from the file keep their dataclass defaults.

    Raises:
        SettingsValidationError: If any key is unknown or has an invalid value.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_SETTINGS_PATH
    raw = path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw) or {}
    validate_settings(data)
    settings = ImportSettings(**data)
    settings.yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return settings


def validate_settings(data: dict[str, Any]) -> None:
    """Raise SettingsValidationError if data does not match the settings schema."""
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    known = {f.name for f in fields(ImportSettings)} - {"yaml_hash"}
    unknown = set(data.keys()) - known
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    for key in _POSITIVE_INT_KEYS:
        if key not in data:
            continue
        val = data[key]
        if isinstance(val, bool) or not isinstance(val, int):
            raise SettingsValidationError(f"'{key}' value '{val}' is not an integer.")
        if val <= 0:
            raise SettingsValidationError(f"'{key}' value {val} must be > 0.")

    if "source_system" in data:
        source_system = data["source_system"]
        if not isinstance(source_system, str) or not source_system.strip():
            raise SettingsValidationError("'source_system' must be a non-empty string.")
