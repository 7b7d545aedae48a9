"""lineage_etl.gender

Gender resolution for workbook rows.

An explicit Sex / Male/Female column always wins when its value is
recognized.  Otherwise the first given name is looked up in a name-list
table loaded from config/gender_names.yml.  Names present in both lists,
or in neither, resolve to UNKNOWN.

Usage:
    lookup = load_gender_lookup(Path("config/gender_names.yml"))
    resolve_gender(row.get("Sex"), "Mary Jane", lookup)   # -> "FEMALE"
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Literal, Protocol

import yaml

Gender = Literal["MALE", "FEMALE", "UNKNOWN"]

MALE: Gender = "MALE"
FEMALE: Gender = "FEMALE"
UNKNOWN: Gender = "UNKNOWN"

_EXPLICIT_VALUES: dict[str, Gender] = {
    "male": MALE,
    "m": MALE,
    "boy": MALE,
    "female": FEMALE,
    "f": FEMALE,
    "girl": FEMALE,
}

DEFAULT_NAMES_PATH = Path(__file__).parent.parent.parent / "config" / "gender_names.yml"


class GenderNamesValidationError(ValueError):
    """Raised when a gender name-list YAML file is malformed."""


class GenderLookup(Protocol):
    def lookup_gender(self, name: str | None) -> Gender: ...


def map_gender(value: Any) -> Gender:
    """Map an explicit gender cell to MALE/FEMALE, else UNKNOWN."""
    if value is None:
        return UNKNOWN
    return _EXPLICIT_VALUES.get(str(value).strip().lower(), UNKNOWN)


def _name_token(name: str | None) -> str | None:
    if not name:
        return None
    parts = name.strip().split()
    if not parts:
        return None
    token = re.sub(r"[^a-z]", "", parts[0].lower())
    return token or None


@dataclass
class NameListGenderLookup:
    """Static first-name -> gender table."""

    male_names: frozenset[str] = field(default_factory=frozenset)
    female_names: frozenset[str] = field(default_factory=frozenset)
    source_hash: str | None = None

    @classmethod
    def from_names(cls, male: Iterable[str], female: Iterable[str]) -> NameListGenderLookup:
        return cls(
            male_names=frozenset(n.strip().lower() for n in male if n and n.strip()),
            female_names=frozenset(n.strip().lower() for n in female if n and n.strip()),
        )

    def lookup_gender(self, name: str | None) -> Gender:
        token = _name_token(name)
        if token is None:
            return UNKNOWN
        is_male = token in self.male_names
        is_female = token in self.female_names
        if is_male and not is_female:
            return MALE
        if is_female and not is_male:
            return FEMALE
        return UNKNOWN


def load_gender_lookup(yaml_path: Path) -> NameListGenderLookup:
    """Load a NameListGenderLookup from a YAML file with 'male' and 'female' lists.

    Raises:
        GenderNamesValidationError: If either list is missing or not a list.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if not isinstance(data, dict):
        raise GenderNamesValidationError("YAML root must be a mapping.")
    for key in ("male", "female"):
        if not isinstance(data.get(key), list):
            raise GenderNamesValidationError(f"'{key}' must be a list of names.")
    lookup = NameListGenderLookup.from_names(
        (str(n) for n in data["male"]),
        (str(n) for n in data["female"]),
    )
    lookup.source_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return lookup


@lru_cache(maxsize=1)
def default_gender_lookup() -> NameListGenderLookup:
    """Lookup built from the bundled config/gender_names.yml."""
    return load_gender_lookup(DEFAULT_NAMES_PATH)


def resolve_gender(explicit: Any, first_name: str | None, lookup: GenderLookup) -> Gender:
    """Prefer a recognized explicit value; fall back to name inference."""
    g = map_gender(explicit)
    if g != UNKNOWN:
        return g
    return lookup.lookup_gender(first_name)


def opposite_gender(g: Gender) -> Gender:
    if g == MALE:
        return FEMALE
    if g == FEMALE:
        return MALE
    return UNKNOWN
