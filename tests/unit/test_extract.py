"""Unit tests for lineage_etl.extract."""

from __future__ import annotations

import pytest

from lineage_etl.extract import (
    SHEET_EXTRACTORS,
    SHEET_ORDER,
    CanonicalData,
    PartnershipCandidate,
    PersonCandidate,
    enrich_person,
    extract_canonical,
)
from lineage_etl.gender import FEMALE, MALE, UNKNOWN, NameListGenderLookup
from lineage_etl.workbook import SheetData

LOOKUP = NameListGenderLookup.from_names(["William", "John", "Thomas"], ["Mary", "Jane", "Anne"])

CORE = "Loyd List 1-190 - Edit"
GIRLS = "All Girls & Descendants"
WOMEN_85 = "Women from #85 onwards"
HATCH = "Hatch&Match Details"
BIOS = "Updated Bios & Spouse Details"
BIOS_2 = "BiographyMarriageDetsCountries"
CONTACTS = "Contacts"


def _sheet(name: str, rows: list[dict]) -> SheetData:
    headers = sorted({k for r in rows for k in r})
    return SheetData(sheet_name=name, headers=headers, rows=rows)


def _core_row(loyd: int, first: str, **extra) -> dict:
    row = {
        "Loyd ##": loyd,
        "1st Name": first,
        "Surname": "Loyd",
        "Sex": None,
        "Year of Birth": None,
        "Year of Death": None,
        "DoB": None,
        "DoD": None,
        "Father's Loyd #": None,
    }
    row.update(extra)
    return row


def _extract(*sheets: SheetData) -> CanonicalData:
    return extract_canonical(list(sheets), LOOKUP)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    def test_every_ordered_sheet_has_an_extractor(self):
        assert set(SHEET_ORDER) == set(SHEET_EXTRACTORS)
        assert SHEET_ORDER[0] == CORE
        assert SHEET_ORDER[-1] == CONTACTS

    def test_unknown_sheets_skipped(self):
        result = _extract(_sheet("Scratch", [{"A": 1}]))
        assert result.people == []
        assert result.stats["sheets_skipped"] == 1

    def test_priority_order_independent_of_workbook_order(self):
        hatch = _sheet(HATCH, [{"LOYD #": 1, "1st Name": "Billy", "Surname": "Loyd", "KNOWN AS": "Billy Loyd"}])
        core = _sheet(CORE, [_core_row(1, "William", **{"Year of Birth": 1690})])
        result = _extract(hatch, core)
        assert len(result.people) == 1
        person = result.people[0]
        assert person.given_name_1 == "William"
        assert person.display_name == "William (1): 1690–?"


# ---------------------------------------------------------------------------
# Core list
# ---------------------------------------------------------------------------

class TestCoreList:
    def test_person_and_events(self):
        row = _core_row(1, "William", Sex="Male", **{"Year of Birth": 1690.0, "Year of Death": 1750})
        result = _extract(_sheet(CORE, [row]))
        p = result.person("LOYD:1")
        assert p.external_id == "1"
        assert p.gender == MALE
        assert p.display_name == "William (1): 1690–1750"
        assert not p.is_placeholder
        birth = result.event_for("LOYD:1", "BIRTH")
        death = result.event_for("LOYD:1", "DEATH")
        assert birth.key == "LOYD:1:BIRTH:subject"
        assert birth.date_year == 1690 and birth.date_exact is None
        assert death.date_year == 1750

    def test_raw_name_column_wins(self):
        row = _core_row(4, "Thomas", Name="Thomas Loyd (4) 1745")
        result = _extract(_sheet(CORE, [row]))
        assert result.person("LOYD:4").display_name == "Thomas Loyd (4) 1745"

    def test_exact_birth_from_serial(self):
        row = _core_row(2, "John", DoB=44853)
        birth = _extract(_sheet(CORE, [row])).event_for("LOYD:2", "BIRTH")
        assert (birth.date_year, birth.date_month, birth.date_day) == (2022, 10, 19)
        assert birth.date_text == "19/10/2022"

    def test_month_day_fallback_columns(self):
        row = _core_row(2, "John", **{"Year of Birth": 1720, "BIRTH MONTH": 3, "BIRTH DAY": 14})
        birth = _extract(_sheet(CORE, [row])).event_for("LOYD:2", "BIRTH")
        assert (birth.date_year, birth.date_month, birth.date_day) == (1720, 3, 14)

    def test_gender_inferred_from_name(self):
        result = _extract(_sheet(CORE, [_core_row(3, "Mary")]))
        assert result.person("LOYD:3").gender == FEMALE

    def test_father_edge(self):
        rows = [_core_row(1, "William"), _core_row(2, "John", **{"Father's Loyd #": 1.0})]
        result = _extract(_sheet(CORE, rows))
        assert [(e.parent_key, e.child_key, e.type) for e in result.parent_child] == [
            ("LOYD:1", "LOYD:2", "BIOLOGICAL"),
        ]

    def test_missing_id_skipped(self):
        rows = [_core_row(None, "Ghost"), _core_row(1, "William")]
        result = _extract(_sheet(CORE, rows))
        assert [p.primary_external_key for p in result.people] == ["LOYD:1"]
        assert result.stats["rows_missing_id"] == 1

    def test_death_year_artifact_dropped(self):
        row = _core_row(5, "John", **{"Year of Birth": 1800, "Year of Death": 1900})
        result = _extract(_sheet(CORE, [row]))
        assert result.event_for("LOYD:5", "DEATH") is None
        assert result.person("LOYD:5").display_name == "John (5): 1800–?"

    def test_death_year_1900_kept_with_date(self):
        row = _core_row(5, "John", **{"Year of Death": 1900, "DoD": "03/04/1900"})
        death = _extract(_sheet(CORE, [row])).event_for("LOYD:5", "DEATH")
        assert death.date_year == 1900

    def test_marriage_event(self):
        row = _core_row(1, "William", **{"DoM": "c.1715"})
        marriage = _extract(_sheet(CORE, [row])).event_for("LOYD:1", "MARRIAGE")
        assert marriage.date_year == 1715
        assert marriage.date_is_approx

    def test_repeated_key_merges_into_first(self):
        rows = [_core_row(1, "William"), _core_row(1, "Billy", **{"Known as": "Bill"})]
        result = _extract(_sheet(CORE, rows))
        assert len(result.people) == 1
        p = result.person("LOYD:1")
        assert p.given_name_1 == "William"
        assert p.known_as == "Bill"


# ---------------------------------------------------------------------------
# Descendant sheets
# ---------------------------------------------------------------------------

def _girl_row(code, first, parent, **extra) -> dict:
    row = {
        "Loyd ##": code,
        "1st Name": first,
        "Surname": "Smith",
        "Male/Female": None,
        "PARENT's Loyd #": parent,
        "Year of Birth": None,
        "Husband/WIFE/Partner": None,
        "Marriage Notes": None,
    }
    row.update(extra)
    return row


class TestDescendants:
    def test_girls_key_and_fields(self):
        row = _girl_row(
            "1a", "Mary", 1,
            **{
                "Generation from William (#1)": 3,
                "Loyd Descendant Generation": "G3",
                "Length": "long",
                "Additional Information": "Lived in Cork",
                "Father's Loyd Loyd #": "1",
            },
        )
        result = _extract(_sheet(GIRLS, [row]))
        p = result.person("GIRLS:1a")
        assert p.gender == FEMALE
        assert p.generation_from_founder == 3
        assert p.descendant_generation == "G3"
        assert p.length_metric == "long"
        assert p.biography_md == "Lived in Cork"
        assert p.branch_root_external_id == "1"

    def test_parent_resolution_numeric_and_alnum(self):
        rows = [_girl_row("1a", "Mary", 1), _girl_row("1a1", "Anne", "1a")]
        result = _extract(_sheet(GIRLS, rows))
        assert {(e.parent_key, e.child_key) for e in result.parent_child} == {
            ("LOYD:1", "GIRLS:1a"),
            ("GIRLS:1a", "GIRLS:1a1"),
        }

    def test_unknown_parent_reference_ignored(self):
        result = _extract(_sheet(GIRLS, [_girl_row("2b", "Anne", "Not known")]))
        assert result.parent_child == []

    def test_placeholder_spouse(self):
        row = _girl_row(
            "1a", "Mary", 1,
            **{"Husband/WIFE/Partner": "John Brown (m. 1790)", "Marriage Notes": "Married in Cork"},
        )
        result = _extract(_sheet(GIRLS, [row]))
        spouse = result.person("SPOUSE:GIRLS:1a:1")
        assert spouse.is_placeholder
        assert spouse.gender == MALE
        assert spouse.given_name_1 == "John"
        assert spouse.display_name == "John Brown (m. 1790)"
        assert len(result.partnerships) == 1
        pt = result.partnerships[0]
        assert (pt.person_a_key, pt.person_b_key) == ("GIRLS:1a", "SPOUSE:GIRLS:1a:1")
        assert pt.type == "MARRIAGE"
        assert pt.notes_md == "Married in Cork"
        assert pt.marriage_event_key is None

    def test_placeholder_spouse_gender_unknown_owner(self):
        row = _girl_row("3c", "Zebedee", 1, **{"Husband/WIFE/Partner": "Pat"})
        result = _extract(_sheet(GIRLS, [row]))
        assert result.person("SPOUSE:GIRLS:3c:1").gender == UNKNOWN

    def test_same_code_on_two_tabs_is_one_person(self):
        result = _extract(
            _sheet(GIRLS, [_girl_row("85a", "Mary", 85)]),
            _sheet(WOMEN_85, [_girl_row("85a", "Mary", 85, **{"Additional Information": "Bio"})]),
        )
        assert [p.primary_external_key for p in result.people] == ["GIRLS:85a"]
        assert result.person("GIRLS:85a").biography_md == "Bio"


# ---------------------------------------------------------------------------
# Hatch & Match
# ---------------------------------------------------------------------------

class TestHatchMatch:
    def test_creates_missing_person(self):
        row = {"LOYD #": 7, "1st Name": "Thomas", "Surname": "Loyd", "Year of Birth": 1760, "Father #": 1}
        result = _extract(_sheet(CORE, [_core_row(1, "William")]), _sheet(HATCH, [row]))
        p = result.person("LOYD:7")
        assert p.gender == MALE
        assert p.display_name == "Thomas (7): 1760–?"
        assert result.event_for("LOYD:7", "BIRTH").date_year == 1760
        assert ("LOYD:1", "LOYD:7") in {(e.parent_key, e.child_key) for e in result.parent_child}

    def test_existing_person_only_gap_filled(self):
        core = _sheet(CORE, [_core_row(1, "William")])
        hatch = _sheet(HATCH, [{"LOYD #": 1, "1st Name": "Bill", "Known as": "Old Will", "Father #": 99}])
        result = _extract(core, hatch)
        p = result.person("LOYD:1")
        assert p.given_name_1 == "William"
        assert p.known_as == "Old Will"
        assert result.parent_child == []


# ---------------------------------------------------------------------------
# Bios
# ---------------------------------------------------------------------------

class TestBios:
    def test_fills_biography_and_residency(self):
        core = _sheet(CORE, [_core_row(1, "William")])
        bios = _sheet(BIOS, [{
            "Loyd #": 1,
            "Additional Biographical Information (Full Address)": "Full bio",
            "Additional Biographical Information (Short address)": "Short bio",
            "Countries lived in": "Ireland; Wales",
        }])
        p = _extract(core, bios).person("LOYD:1")
        assert p.biography_md == "Full bio"
        assert p.biography_short_md == "Short bio"
        assert p.residency_text == "Ireland; Wales"

    def test_never_overwrites(self):
        core = _sheet(CORE, [_core_row(1, "William")])
        first = _sheet(BIOS, [{"Loyd #": 1, "Countries lived in": "Ireland"}])
        second = _sheet(BIOS_2, [{"Loyd #": 1, "Countries lived in": "France"}])
        assert _extract(core, first, second).person("LOYD:1").residency_text == "Ireland"

    def test_unknown_owner_skipped(self):
        core = _sheet(CORE, [_core_row(1, "William")])
        bios = _sheet(BIOS, [{"Loyd #": 42, "WIFE/HUSBAND": "Jane"}])
        result = _extract(core, bios)
        assert result.person("SPOUSE:LOYD:42:1") is None
        assert result.stats["rows_unknown_person"] == 1

    def test_spouse_linked_to_marriage_event(self):
        core = _sheet(CORE, [_core_row(1, "William", Sex="M", DoM="12/05/1715")])
        bios = _sheet(BIOS, [{"Loyd #": 1, "WIFE/HUSBAND": "Jane Doe"}])
        result = _extract(core, bios)
        spouse = result.person("SPOUSE:LOYD:1:1")
        assert spouse.gender == FEMALE
        assert result.partnerships[0].marriage_event_key == "LOYD:1:MARRIAGE:subject"

    def test_second_sheet_fills_notes_without_new_placeholder(self):
        core = _sheet(CORE, [_core_row(1, "William")])
        first = _sheet(BIOS, [{"Loyd #": 1, "WIFE/HUSBAND": "Jane Doe"}])
        second = _sheet(BIOS_2, [{"Loyd #": 1, "WIFE/HUSBAND": "Jane Doe", "Marriage Notes": "Wed 1715"}])
        result = _extract(core, first, second)
        assert len(result.partnerships) == 1
        assert result.partnerships[0].notes_md == "Wed 1715"
        assert [p.primary_external_key for p in result.people if p.is_placeholder] == ["SPOUSE:LOYD:1:1"]


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

class TestContacts:
    def test_contact_fields(self):
        row = {
            "Loyd ##": 1,
            "Email": "A@x.com; b@y.com",
            "Mobile": "+44 7700 900123",
            "Landline": "123",
            "2000 Address": "1 Main St",
            "Postal Address in 2021": "2 High St",
            "Establishing Contact": "Cousin",
            "Comments - Covered by": "Anne",
            "Age - Current": 54,
            "Number of Kids in 2000": 2.0,
        }
        result = _extract(_sheet(CONTACTS, [row]))
        c = result.contacts[0]
        assert c.person_key == "LOYD:1"
        assert c.emails == ["a@x.com", "b@y.com"]
        assert c.mobile == "+44 7700 900123"
        assert c.landline is None
        assert c.address_2000 == "1 Main St"
        assert c.postal_address_2021 == "2 High St"
        assert c.establishing_contact == "Cousin"
        assert c.comments == "Anne"
        assert c.age_current == 54
        assert c.kids_in_2000 == 2

    def test_first_contact_per_person_wins(self):
        rows = [{"Loyd ##": 1, "Mobile": "0123456789"}, {"Loyd ##": 1.0, "Mobile": "0987654321"}]
        result = _extract(_sheet(CONTACTS, rows))
        assert [c.mobile for c in result.contacts] == ["0123456789"]
        assert result.stats["contacts_duplicate"] == 1


# ---------------------------------------------------------------------------
# Enrichment + dedupe
# ---------------------------------------------------------------------------

class TestEnrichPerson:
    def _person(self, **kw) -> PersonCandidate:
        return PersonCandidate(primary_external_key="LOYD:1", external_id="1", display_name="W", **kw)

    def test_fills_only_nulls(self):
        p = self._person(surname="Loyd")
        filled = enrich_person(p, surname="Lloyd", known_as="Will")
        assert filled == ["known_as"]
        assert p.surname == "Loyd"
        assert p.known_as == "Will"

    def test_ignores_blank_values(self):
        p = self._person()
        assert enrich_person(p, known_as="  ", surname=None) == []
        assert p.known_as is None

    def test_rejects_identity_fields(self):
        with pytest.raises(KeyError):
            enrich_person(self._person(), display_name="X")


class TestDedupe:
    def test_parent_child_deduplicated(self):
        rows = [
            _core_row(1, "William"),
            _core_row(2, "John", **{"Father's Loyd #": 1}),
            _core_row(2, "John", **{"Father's Loyd #": "1"}),
        ]
        result = _extract(_sheet(CORE, rows))
        assert len(result.parent_child) == 1

    def test_partnership_pair_is_unordered(self):
        data = CanonicalData()
        data.add_partnership(PartnershipCandidate("A", "B", notes_md=None))
        same = data.add_partnership(PartnershipCandidate("B", "A", notes_md="n"))
        assert len(data.partnerships) == 1
        assert same.notes_md == "n"

    def test_self_parent_dropped(self):
        data = CanonicalData()
        data.add_parent_child("LOYD:1", "LOYD:1")
        assert data.parent_child == []
