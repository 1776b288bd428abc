from datetime import datetime, timedelta

from bson import ObjectId

from storefront.helpers import (
    cents_to_amount,
    is_valid_email,
    months_ago,
    normalize_object_id_list,
    normalize_object_id_value,
    parse_bool,
    parse_duration,
    safe_float,
    safe_int,
    safe_positive_int,
    serialize_document,
    to_cents,
    truncate_preview,
)


def test_parse_duration_units():
    assert parse_duration("15m", timedelta(0)) == timedelta(minutes=15)
    assert parse_duration("7d", timedelta(0)) == timedelta(days=7)
    assert parse_duration("3600", timedelta(0)) == timedelta(seconds=3600)
    assert parse_duration("soon", timedelta(hours=1)) == timedelta(hours=1)
    assert parse_duration(None, timedelta(hours=2)) == timedelta(hours=2)


def test_money_conversions_round_half_up():
    assert to_cents("19.995") == 2000
    assert to_cents(0.1) == 10
    assert to_cents("not money") == 0
    assert cents_to_amount(1999) == 19.99


def test_number_parsing_falls_back_to_defaults():
    assert safe_float("nan", 1.5) == 1.5
    assert safe_float("2.5") == 2.5
    assert safe_positive_int("-4", 1) == 1
    assert safe_positive_int("30", 20) == 30
    assert safe_int("inf", 7) == 7
    assert safe_int("1e400", 3) == 3


def test_object_id_normalization_skips_garbage():
    object_id = ObjectId()
    assert normalize_object_id_value(str(object_id)) == object_id
    assert normalize_object_id_value("nope") is None
    assert normalize_object_id_list([object_id, "bad", None]) == [object_id]


def test_email_and_bool_parsing():
    assert is_valid_email(" Someone@Example.com ")
    assert not is_valid_email("someone@")
    assert parse_bool("Yes")
    assert not parse_bool("0")


def test_truncate_preview():
    assert truncate_preview("short") == "short"
    preview = truncate_preview("x" * 200)
    assert len(preview) == 160
    assert preview.endswith("...")


def test_serialize_document_renames_id_and_stringifies_values():
    object_id = ObjectId()
    created = datetime(2024, 3, 1, 12, 30)
    serialized = serialize_document(
        {"_id": object_id, "owner": object_id, "created_at": created, "tags": [object_id]}
    )
    assert serialized == {
        "id": str(object_id),
        "owner": str(object_id),
        "created_at": "2024-03-01T12:30:00Z",
        "tags": [str(object_id)],
    }


def test_months_ago_crosses_year_boundary():
    reference = datetime(2024, 2, 29)
    assert months_ago(reference, 3) == datetime(2023, 11, 28)
