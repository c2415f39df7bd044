from __future__ import annotations

from datetime import date

import pytest

from docgraph.extraction.field_types import FieldType, resolve_field_type
from docgraph.extraction.objects import (
    ObjectWriter,
    candidate_data,
    format_value_as_name,
    resolve_object_name,
    to_text,
)
from docgraph.utils.dates import normalize_date, normalize_date_pattern, ordinal

SCHEMA = {
    "type": "object",
    "properties": {
        "policy": {
            "type": "object",
            "properties": {
                "effective": {"type": "string", "format": "date"},
                "issued_at": {"type": ["string", "null"], "format": "date-time"},
                "premium": {"type": "number"},
                "renewable": {"type": "boolean"},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
        }
    },
}


@pytest.mark.parametrize(
    ("field", "expected"),
    [
        ("effective", FieldType.DATE),
        ("issued_at", FieldType.DATETIME),
        ("premium", FieldType.NUMBER),
        ("renewable", FieldType.BOOLEAN),
        ("tags", FieldType.STRING),
        ("unknown", FieldType.STRING),
        ("date", FieldType.DATE),
    ],
)
def test_field_types_resolve_from_nested_schema(field: str, expected: FieldType) -> None:
    assert resolve_field_type(field, SCHEMA) == expected


@pytest.mark.parametrize(
    ("value", "field_type", "expected"),
    [
        ("2017-10-31", FieldType.DATE, "October 31st, 2017"),
        ("10/22/2017", FieldType.DATE, "October 22nd, 2017"),
        ("not a date", FieldType.DATE, "not a date"),
        (1234567, FieldType.NUMBER, "1,234,567"),
        (1234.5, FieldType.NUMBER, "1,234.50"),
        (True, FieldType.STRING, "Yes"),
        ("no", FieldType.BOOLEAN, "No"),
        ("  ACME Corp ", FieldType.STRING, "ACME Corp"),
    ],
)
def test_format_value_as_name(value, field_type: FieldType, expected: str) -> None:
    assert format_value_as_name(value, field_type) == expected


def test_object_name_prefers_name_then_identity_fields() -> None:
    assert resolve_object_name({"name": "Policy A", "effective": "2020-01-01"}, ["effective"]) == "Policy A"
    assert (
        resolve_object_name({"name": " ", "premium": None, "effective": "2020-01-01"}, ["premium", "effective"], SCHEMA)
        == "January 1st, 2020"
    )
    assert resolve_object_name({"premium": ""}, ["premium"], SCHEMA) is None


def test_dates_normalize_for_matching() -> None:
    assert normalize_date("March 3rd, 2021") == "2021-03-03"
    assert normalize_date("2021-03-03T10:00:00Z") == "2021-03-03"
    assert normalize_date("someday") is None
    assert normalize_date_pattern("%10/23/2017%") == "%2017-10-23%"
    assert normalize_date_pattern("10/23/2017%") == "2017-10-23%"
    assert normalize_date_pattern("%%") == "%%"
    assert normalize_date_pattern("%Smith%") is None
    assert [ordinal(d) for d in (1, 2, 3, 4, 11, 12, 13, 21, 22, 23)] == [
        "1st", "2nd", "3rd", "4th", "11th", "12th", "13th", "21st", "22nd", "23rd",
    ]


def test_to_text() -> None:
    assert to_text(True) == "true"
    assert to_text({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
    assert to_text(3.5) == "3.5"
    assert to_text(None) is None


def test_writer_stores_native_columns_and_attributes(session) -> None:
    writer = ObjectWriter(session, team_id=4, schema=SCHEMA)

    obj = writer.create(
        "Policy",
        {
            "id": 99,
            "_search_query": {"name": "%x%"},
            "name": "Policy A",
            "date": "Jan 5, 2020",
            "effective": "02/01/2020",
            "premium": 120.5,
            "tags": ["auto", "home"],
            "renewable": False,
            "notes": "",
        },
    )

    assert obj.team_id == 4
    assert obj.name == "Policy A"
    assert obj.date == date(2020, 1, 5)
    attributes = {a.name: a for a in obj.attributes}
    assert set(attributes) == {"effective", "premium", "tags", "renewable"}
    assert attributes["effective"].text_value == "2020-02-01"
    assert attributes["premium"].json_value == 120.5
    assert attributes["tags"].text_value == '["auto", "home"]'
    assert attributes["renewable"].text_value == "false"
    assert candidate_data(obj)["renewable"] is False

    writer.save_fields(obj, {"premium": 130, "effective": None})
    assert {a.name: a.get_value() for a in obj.attributes}["premium"] == 130
    assert candidate_data(obj)["effective"] == "2020-02-01"


def test_relationships_are_created_once(session) -> None:
    writer = ObjectWriter(session)
    parent = writer.create("Account", {"name": "A"})
    child = writer.create("Policy", {"name": "P"})

    first = writer.ensure_relationship(parent.id, child.id, "policies")
    second = writer.ensure_relationship(parent.id, child.id, "policies")

    assert first.id == second.id
    found, name = writer.parent_of(child.id)
    assert (found.id, name) == (parent.id, "policies")
    assert writer.parent_of(parent.id) == (None, None)
