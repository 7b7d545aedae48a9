"""lineage_etl.extract

Canonical extraction: raw workbook rows -> candidate people, events,
parent/child edges, partnerships and contacts, all keyed by external key.

Sheets are processed in SHEET_ORDER so that later sheets only fill gaps on
people created by earlier, more authoritative ones (fill-nulls-only).  The
sole identity mechanism is the external key '<TAG>:<natural id>'; there is
no name-based matching here.

Pure transformation: no DB access, no exceptions for bad rows.  Rows
without their identifier column are skipped and counted in
CanonicalData.stats.

Sheets:
  Loyd List 1-190 - Edit          core male-line list        LOYD:<n>
  All Girls & Descendants         descendants via daughters  GIRLS:<code>
  Women from #85 onwards          same layout as above       GIRLS:<code>
  Women before #85                same layout as above       GIRLS:<code>
  Hatch&Match Details             supplements missing people LOYD:<n>
  Updated Bios & Spouse Details   biography / residency      LOYD:<n>
  BiographyMarriageDetsCountries  same layout as above       LOYD:<n>
  Contacts                        one contact per person     LOYD:<n>
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable

from lineage_etl.gender import (
    UNKNOWN,
    Gender,
    GenderLookup,
    default_gender_lookup,
    opposite_gender,
    resolve_gender,
)
from lineage_etl.normalize import (
    EMPTY_DATE,
    ParsedDate,
    build_display_name,
    cell_id,
    cell_num,
    cell_str,
    first_word,
    is_numeric_id,
    normalize_phone,
    parse_date,
    parse_year,
    resolve_death_year,
    split_emails,
)
from lineage_etl.workbook import SheetData

SOURCE_SYSTEM = "LOYD_BOOK_2022"

LOYD_TAG = "LOYD"
GIRLS_TAG = "GIRLS"
SPOUSE_TAG = "SPOUSE"

ROLE_SUBJECT = "subject"
ROLE_SPOUSE = "spouse"
ROLE_CHILD = "child"

# Values used for "not known" in parent-reference columns
_UNKNOWN_REFS = frozenset({"not known", "unknown", "n/a", "?"})


def external_key(tag: str, natural_id: str) -> str:
    return f"{tag}:{natural_id}"


def spouse_key(owner_key: str) -> str:
    return f"{SPOUSE_TAG}:{owner_key}:1"


# ---------------------------------------------------------------------------
# Candidate payloads
# ---------------------------------------------------------------------------

@dataclass
class PersonCandidate:
    primary_external_key: str
    external_id: str
    display_name: str
    source_system: str = SOURCE_SYSTEM
    surname: str | None = None
    given_name_1: str | None = None
    given_name_2: str | None = None
    given_name_3: str | None = None
    known_as: str | None = None
    preferred_name: str | None = None
    gender: Gender = UNKNOWN
    is_placeholder: bool = False
    biography_md: str | None = None
    biography_short_md: str | None = None
    residency_text: str | None = None
    legacy_generation: int | None = None
    generation_from_founder: int | None = None
    descendant_generation: str | None = None
    length_metric: str | None = None
    raw_name_string: str | None = None
    branch_root_external_id: str | None = None


# Fields a later sheet may fill in on an existing person
ENRICHABLE_FIELDS = frozenset({
    "surname", "given_name_1", "given_name_2", "given_name_3",
    "known_as", "preferred_name",
    "biography_md", "biography_short_md", "residency_text",
    "legacy_generation", "generation_from_founder", "descendant_generation",
    "length_metric", "raw_name_string", "branch_root_external_id",
})


@dataclass
class EventCandidate:
    person_key: str
    type: str
    role: str = ROLE_SUBJECT
    date_exact: date | None = None
    date_year: int | None = None
    date_month: int | None = None
    date_day: int | None = None
    date_text: str | None = None
    date_is_approx: bool = False

    @property
    def key(self) -> str:
        return f"{self.person_key}:{self.type}:{self.role}"

    @property
    def has_date(self) -> bool:
        return (
            self.date_exact is not None
            or self.date_year is not None
            or self.date_text is not None
        )


@dataclass
class ParentChildCandidate:
    parent_key: str
    child_key: str
    type: str = "BIOLOGICAL"


@dataclass
class PartnershipCandidate:
    person_a_key: str
    person_b_key: str
    type: str = "MARRIAGE"
    notes_md: str | None = None
    marriage_event_key: str | None = None

    @property
    def pair(self) -> frozenset[str]:
        return frozenset((self.person_a_key, self.person_b_key))


@dataclass
class ContactCandidate:
    person_key: str
    emails: list[str] = field(default_factory=list)
    mobile: str | None = None
    landline: str | None = None
    address_2000: str | None = None
    postal_address_2021: str | None = None
    establishing_contact: str | None = None
    comments: str | None = None
    age_current: int | float | None = None
    kids_in_2000: int | float | None = None


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

@dataclass
class CanonicalData:
    """Result accumulator threaded through every sheet mapper."""

    people: list[PersonCandidate] = field(default_factory=list)
    events: list[EventCandidate] = field(default_factory=list)
    parent_child: list[ParentChildCandidate] = field(default_factory=list)
    partnerships: list[PartnershipCandidate] = field(default_factory=list)
    contacts: list[ContactCandidate] = field(default_factory=list)
    stats: Counter = field(default_factory=Counter)
    people_by_key: dict[str, PersonCandidate] = field(default_factory=dict, repr=False)
    events_by_key: dict[str, EventCandidate] = field(default_factory=dict, repr=False)
    partnerships_by_person: dict[str, PartnershipCandidate] = field(default_factory=dict, repr=False)

    # -- people ------------------------------------------------------------

    def person(self, key: str) -> PersonCandidate | None:
        return self.people_by_key.get(key)

    def add_person(self, person: PersonCandidate) -> PersonCandidate:
        """Add a person, or fill gaps on the one already holding this key."""
        existing = self.people_by_key.get(person.primary_external_key)
        if existing is not None:
            filled = enrich_person(existing, **{
                name: getattr(person, name) for name in ENRICHABLE_FIELDS
            })
            if existing.gender == UNKNOWN and person.gender != UNKNOWN:
                existing.gender = person.gender
                filled.append("gender")
            self.stats["people_merged"] += 1
            if filled:
                self.stats["people_enriched"] += 1
            return existing
        self.people.append(person)
        self.people_by_key[person.primary_external_key] = person
        return person

    # -- events ------------------------------------------------------------

    def add_event(self, event: EventCandidate) -> EventCandidate:
        existing = self.events_by_key.get(event.key)
        if existing is not None:
            self.stats["events_duplicate"] += 1
            return existing
        self.events.append(event)
        self.events_by_key[event.key] = event
        return event

    def event_for(self, person_key: str, type_: str, role: str = ROLE_SUBJECT) -> EventCandidate | None:
        return self.events_by_key.get(f"{person_key}:{type_}:{role}")

    # -- relationships -----------------------------------------------------

    def add_parent_child(self, parent_key: str, child_key: str, type_: str = "BIOLOGICAL") -> None:
        if parent_key == child_key:
            self.stats["parent_child_self_reference"] += 1
            return
        self.parent_child.append(ParentChildCandidate(parent_key, child_key, type_))

    def partnership_for(self, person_key: str) -> PartnershipCandidate | None:
        return self.partnerships_by_person.get(person_key)

    def add_partnership(self, partnership: PartnershipCandidate) -> PartnershipCandidate:
        for existing in (
            self.partnerships_by_person.get(partnership.person_a_key),
            self.partnerships_by_person.get(partnership.person_b_key),
        ):
            if existing is not None and existing.pair == partnership.pair:
                if existing.notes_md is None and partnership.notes_md:
                    existing.notes_md = partnership.notes_md
                return existing
        self.partnerships.append(partnership)
        self.partnerships_by_person.setdefault(partnership.person_a_key, partnership)
        self.partnerships_by_person.setdefault(partnership.person_b_key, partnership)
        return partnership

    def counts(self) -> dict[str, int]:
        return {
            "people": len(self.people),
            "events": len(self.events),
            "parent_child": len(self.parent_child),
            "partnerships": len(self.partnerships),
            "contacts": len(self.contacts),
        }


def enrich_person(existing: PersonCandidate, **values: Any) -> list[str]:
    """Fill empty fields on existing from non-empty values.

    Never overwrites a populated field and never writes a blank.
    Returns the names of the fields that were filled.
    """
    filled: list[str] = []
    for name, value in values.items():
        if name not in ENRICHABLE_FIELDS:
            raise KeyError(f"{name!r} is not an enrichable person field")
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if getattr(existing, name) is None:
            setattr(existing, name, value)
            filled.append(name)
    return filled


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _first_present(row: dict[str, Any], *columns: str) -> Any:
    """Value of the first column holding a non-blank value."""
    for col in columns:
        v = row.get(col)
        if v is None or (isinstance(v, str) and not v.strip()):
            continue
        return v
    return None


def _event_from_date(
    person_key: str,
    type_: str,
    parsed: ParsedDate,
    year: int | None = None,
    month: Any = None,
    day: Any = None,
    role: str = ROLE_SUBJECT,
) -> EventCandidate:
    """Build an event, falling back to separate year/month/day columns."""
    fallback_month = cell_num(month) if parsed.month is None else None
    fallback_day = cell_num(day) if parsed.day is None else None
    return EventCandidate(
        person_key=person_key,
        type=type_,
        role=role,
        date_exact=parsed.exact,
        date_year=parsed.year if parsed.year is not None else year,
        date_month=parsed.month if parsed.month is not None else _int_in(fallback_month, 1, 12),
        date_day=parsed.day if parsed.day is not None else _int_in(fallback_day, 1, 31),
        date_text=parsed.text if parsed.text is not None else (str(year) if year is not None else None),
        date_is_approx=parsed.is_approx,
    )


def _int_in(value: int | float | None, lo: int, hi: int) -> int | None:
    if value is None or not float(value).is_integer():
        return None
    v = int(value)
    return v if lo <= v <= hi else None


def _parent_ref(value: Any) -> str | None:
    ref = cell_id(value)
    if ref is None or ref.lower() in _UNKNOWN_REFS:
        return None
    return ref


def _add_placeholder_spouse(
    result: CanonicalData,
    owner: PersonCandidate,
    spouse_text: str,
    notes: str | None,
    source_system: str,
) -> None:
    """Create a placeholder spouse + MARRIAGE partnership for owner.

    Skipped when owner already has a partnership; its empty notes are
    filled instead.
    """
    existing = result.partnership_for(owner.primary_external_key)
    if existing is not None:
        if notes and existing.notes_md is None:
            existing.notes_md = notes
            result.stats["partnership_notes_filled"] += 1
        return

    key = spouse_key(owner.primary_external_key)
    result.add_person(PersonCandidate(
        primary_external_key=key,
        source_system=source_system,
        external_id=key,
        given_name_1=first_word(spouse_text) or spouse_text,
        preferred_name=spouse_text,
        display_name=spouse_text,
        gender=opposite_gender(owner.gender),
        is_placeholder=True,
        raw_name_string=spouse_text,
    ))
    marriage = result.event_for(owner.primary_external_key, "MARRIAGE")
    result.add_partnership(PartnershipCandidate(
        person_a_key=owner.primary_external_key,
        person_b_key=key,
        type="MARRIAGE",
        notes_md=notes,
        marriage_event_key=marriage.key if marriage else None,
    ))
    result.stats["placeholder_spouses"] += 1


# ---------------------------------------------------------------------------
# Sheet mappers
# ---------------------------------------------------------------------------

SheetMapper = Callable[[SheetData, CanonicalData, GenderLookup, str], None]


def extract_core_list(
    sheet: SheetData, result: CanonicalData, lookup: GenderLookup, source_system: str,
) -> None:
    """Core numbered list: one row per male-line family member."""
    for row in sheet.rows:
        external_id = cell_id(row.get("Loyd ##"))
        if external_id is None:
            result.stats["rows_missing_id"] += 1
            continue
        key = external_key(LOYD_TAG, external_id)

        surname = cell_str(row.get("Surname"))
        gn1 = cell_str(row.get("1st Name"))
        known_as = cell_str(row.get("Known as"))
        raw_name = cell_str(row.get("Name")) or cell_str(row.get("Forename (Loyd#) Yr of B"))

        dob = parse_date(_first_present(row, "DoB", "Dob Entered"))
        birth_year = dob.year if dob.year is not None else parse_year(row.get("Year of Birth"))
        dod = parse_date(row.get("DoD"))
        death_year = dod.year if dod.year is not None else resolve_death_year(row.get("Year of Death"), dod)

        person = result.add_person(PersonCandidate(
            primary_external_key=key,
            source_system=source_system,
            external_id=external_id,
            surname=surname,
            given_name_1=gn1,
            given_name_2=cell_str(row.get("2nd Name")),
            given_name_3=cell_str(row.get("3rd Name")),
            known_as=known_as,
            preferred_name=known_as or gn1,
            display_name=raw_name or build_display_name(gn1, surname, external_id, birth_year, death_year),
            gender=resolve_gender(row.get("Sex"), gn1, lookup),
            legacy_generation=_whole(cell_num(row.get("Generation"))),
            raw_name_string=raw_name,
        ))

        result.add_event(_event_from_date(
            key, "BIRTH", dob, parse_year(row.get("Year of Birth")),
            row.get("BIRTH MONTH"), row.get("BIRTH DAY"),
        ))
        if death_year is not None or dod.has_value:
            result.add_event(_event_from_date(
                key, "DEATH", dod, death_year, row.get("DEATH MONTH"), row.get("DEATH DAY"),
            ))
        dom = parse_date(_first_present(row, "DoM ", "DoM"))
        if dom.has_value or dom.text:
            result.add_event(_event_from_date(key, "MARRIAGE", dom))

        father = _parent_ref(row.get("Father's Loyd #"))
        if father is not None and is_numeric_id(father):
            result.add_parent_child(external_key(LOYD_TAG, father), person.primary_external_key)
        # "Mothers' Loyd #" holds spouse codes such as '1_W'; mothers come
        # from placeholder spouses, not from this column.


def extract_descendants(
    sheet: SheetData, result: CanonicalData, lookup: GenderLookup, source_system: str,
) -> None:
    """Descendant sheets keyed by alphanumeric lineage code."""
    for row in sheet.rows:
        external_id = cell_id(row.get("Loyd ##"))
        if external_id is None:
            result.stats["rows_missing_id"] += 1
            continue
        key = external_key(GIRLS_TAG, external_id)

        surname = cell_str(row.get("Surname"))
        gn1 = cell_str(row.get("1st Name"))
        known_as = cell_str(row.get("Known as"))
        raw_name = cell_str(row.get("Birth Name")) or cell_str(row.get("Forename (Loyd#) Yr of B"))
        gender = resolve_gender(row.get("Male/Female"), gn1, lookup)

        dob = parse_date(_first_present(row, "DoB", "Dob Entered"))
        year_of_birth = parse_year(row.get("Year of Birth"))
        birth_year = dob.year if dob.year is not None else year_of_birth
        dod = parse_date(_first_present(row, "DoD", "DOD Entered"))
        death_year = dod.year if dod.year is not None else resolve_death_year(row.get("Year of Death"), dod)

        person = result.add_person(PersonCandidate(
            primary_external_key=key,
            source_system=source_system,
            external_id=external_id,
            surname=surname,
            given_name_1=gn1,
            given_name_2=cell_str(row.get("2nd Name")),
            given_name_3=cell_str(row.get("3rd Name")),
            known_as=known_as,
            preferred_name=known_as or gn1,
            display_name=raw_name or build_display_name(gn1, surname, external_id, birth_year, death_year),
            gender=gender,
            biography_md=cell_str(row.get("Additional Information")),
            generation_from_founder=_whole(cell_num(row.get("Generation from William (#1)"))),
            descendant_generation=cell_str(row.get("Loyd Descendant Generation")),
            length_metric=cell_str(row.get("Length")),
            raw_name_string=raw_name,
            branch_root_external_id=cell_str(row.get("Father's Loyd Loyd #")),
        ))

        result.add_event(_event_from_date(key, "BIRTH", dob, year_of_birth))
        if death_year is not None or dod.has_value:
            result.add_event(_event_from_date(key, "DEATH", dod, death_year))
        dom = parse_date(_first_present(row, "DoM ", "DoM"))
        if dom.has_value or dom.text:
            result.add_event(_event_from_date(key, "MARRIAGE", dom))

        parent = _parent_ref(row.get("PARENT's Loyd #"))
        if parent is not None:
            tag = LOYD_TAG if is_numeric_id(parent) else GIRLS_TAG
            result.add_parent_child(external_key(tag, parent), key)

        spouse_text = cell_str(row.get("Husband/WIFE/Partner"))
        if spouse_text:
            _add_placeholder_spouse(
                result, person, spouse_text, cell_str(row.get("Marriage Notes")), source_system,
            )


def extract_hatch_match(
    sheet: SheetData, result: CanonicalData, lookup: GenderLookup, source_system: str,
) -> None:
    """Supplementary register: creates people missing from the core list."""
    for row in sheet.rows:
        external_id = cell_id(row.get("LOYD #"))
        if external_id is None:
            result.stats["rows_missing_id"] += 1
            continue
        key = external_key(LOYD_TAG, external_id)

        surname = cell_str(row.get("Surname"))
        gn1 = cell_str(row.get("1st Name"))
        known_as = cell_str(row.get("Known as")) or cell_str(row.get("KNOWN AS"))

        existing = result.person(key)
        if existing is not None:
            filled = enrich_person(
                existing,
                surname=surname,
                given_name_1=gn1,
                given_name_2=cell_str(row.get("2nd Name")),
                given_name_3=cell_str(row.get("3rd Name")),
                known_as=known_as,
                legacy_generation=_whole(cell_num(row.get("GENERATION"))),
            )
            if filled:
                result.stats["people_enriched"] += 1
            continue

        dob = parse_date(row.get("DoB"))
        year_of_birth = parse_year(row.get("Year of Birth"))
        birth_year = dob.year if dob.year is not None else year_of_birth
        death_year = resolve_death_year(row.get("Year of Death"), EMPTY_DATE)

        result.add_person(PersonCandidate(
            primary_external_key=key,
            source_system=source_system,
            external_id=external_id,
            surname=surname,
            given_name_1=gn1,
            given_name_2=cell_str(row.get("2nd Name")),
            given_name_3=cell_str(row.get("3rd Name")),
            known_as=known_as,
            preferred_name=known_as or gn1,
            display_name=cell_str(row.get("KNOWN AS"))
            or build_display_name(gn1, surname, external_id, birth_year, death_year),
            gender=resolve_gender(_first_present(row, "Sex", "SEX"), gn1, lookup),
            legacy_generation=_whole(cell_num(row.get("GENERATION"))),
            raw_name_string=cell_str(row.get("Lineage Reference")),
        ))
        result.add_event(_event_from_date(key, "BIRTH", dob, year_of_birth))
        if death_year is not None:
            result.add_event(_event_from_date(key, "DEATH", EMPTY_DATE, death_year))

        father = _parent_ref(row.get("Father #"))
        if father is not None and is_numeric_id(father):
            result.add_parent_child(external_key(LOYD_TAG, father), key)


def extract_bios(
    sheet: SheetData, result: CanonicalData, lookup: GenderLookup, source_system: str,
) -> None:
    """Biography / residency / spouse text for people already extracted."""
    for row in sheet.rows:
        external_id = cell_id(row.get("Loyd #"))
        if external_id is None:
            result.stats["rows_missing_id"] += 1
            continue
        owner = result.person(external_key(LOYD_TAG, external_id))
        if owner is None:
            result.stats["rows_unknown_person"] += 1
            continue

        filled = enrich_person(
            owner,
            biography_md=cell_str(row.get("Additional Biographical Information (Full Address)")),
            biography_short_md=cell_str(row.get("Additional Biographical Information (Short address)")),
            residency_text=cell_str(row.get("Countries lived in")),
        )
        if filled:
            result.stats["people_enriched"] += 1

        spouse_text = cell_str(row.get("WIFE/HUSBAND"))
        if spouse_text:
            if owner.gender == UNKNOWN:
                owner.gender = resolve_gender(row.get("Gender"), owner.given_name_1, lookup)
            _add_placeholder_spouse(
                result, owner, spouse_text, cell_str(row.get("Marriage Notes")), source_system,
            )


def extract_contacts(
    sheet: SheetData, result: CanonicalData, lookup: GenderLookup, source_system: str,
) -> None:
    """Contact sheet: at most one contact per person, first row wins."""
    seen = {c.person_key for c in result.contacts}
    for row in sheet.rows:
        external_id = cell_id(row.get("Loyd ##"))
        if external_id is None:
            result.stats["rows_missing_id"] += 1
            continue
        key = external_key(LOYD_TAG, external_id)
        if key in seen:
            result.stats["contacts_duplicate"] += 1
            continue
        seen.add(key)
        result.contacts.append(ContactCandidate(
            person_key=key,
            emails=split_emails(row.get("Email")),
            mobile=normalize_phone(row.get("Mobile")),
            landline=normalize_phone(row.get("Landline")),
            address_2000=cell_str(row.get("2000 Address")),
            postal_address_2021=cell_str(row.get("Postal Address in 2021")),
            establishing_contact=cell_str(row.get("Establishing Contact")),
            comments=cell_str(row.get("Comments - Covered by")),
            age_current=cell_num(row.get("Age - Current")),
            kids_in_2000=cell_num(row.get("Number of Kids in 2000")),
        ))


def _whole(value: int | float | None) -> int | None:
    if value is None or not float(value).is_integer():
        return None
    return int(value)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

SHEET_EXTRACTORS: dict[str, SheetMapper] = {
    "Loyd List 1-190 - Edit": extract_core_list,
    "All Girls & Descendants": extract_descendants,
    "Women from #85 onwards": extract_descendants,
    "Women before #85": extract_descendants,
    "Hatch&Match Details": extract_hatch_match,
    "Updated Bios & Spouse Details": extract_bios,
    "BiographyMarriageDetsCountries": extract_bios,
    "Contacts": extract_contacts,
}

# Most authoritative first
SHEET_ORDER = [
    "Loyd List 1-190 - Edit",
    "All Girls & Descendants",
    "Women from #85 onwards",
    "Women before #85",
    "Hatch&Match Details",
    "Updated Bios & Spouse Details",
    "BiographyMarriageDetsCountries",
    "Contacts",
]


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

def _dedupe(items: list[Any], key: Callable[[Any], Any]) -> list[Any]:
    seen: set[Any] = set()
    out = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        out.append(item)
    return out


def deduplicate(result: CanonicalData) -> None:
    """Final safety net: keep the first record per identity key."""
    result.people = _dedupe(result.people, lambda p: p.primary_external_key)
    result.events = _dedupe(result.events, lambda e: (e.person_key, e.type, e.role))
    before = len(result.parent_child)
    result.parent_child = _dedupe(result.parent_child, lambda pc: (pc.parent_key, pc.child_key))
    result.stats["parent_child_duplicate"] += before - len(result.parent_child)
    result.partnerships = _dedupe(result.partnerships, lambda p: p.pair)
    result.contacts = _dedupe(result.contacts, lambda c: c.person_key)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def extract_canonical(
    sheets: list[SheetData],
    gender_lookup: GenderLookup | None = None,
    source_system: str = SOURCE_SYSTEM,
) -> CanonicalData:
    """Run every recognized sheet's mapper in priority order."""
    lookup = gender_lookup or default_gender_lookup()
    result = CanonicalData()
    by_name = {s.sheet_name: s for s in sheets}

    for name in by_name:
        if name not in SHEET_EXTRACTORS:
            result.stats["sheets_skipped"] += 1

    for name in SHEET_ORDER:
        sheet = by_name.get(name)
        if sheet is None:
            continue
        SHEET_EXTRACTORS[name](sheet, result, lookup, source_system)
        result.stats["sheets_extracted"] += 1

    deduplicate(result)
    return result
