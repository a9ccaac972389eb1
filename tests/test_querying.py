import pytest
from pymongo import ASCENDING, DESCENDING

from errors import ValidationError
from querying import build_filter, page_params, parse_select, parse_sort

FIELDS = ("price", "category", "featured", "tags")


def test_equality_and_operators():
    query = build_filter(
        {"category": "wedding", "price[gte]": "10", "price[lt]": "99.5", "featured": "true", "page": "2"},
        FIELDS,
    )
    assert query == {"category": "wedding", "price": {"$gte": 10, "$lt": 99.5}, "featured": True}


def test_in_operator_splits_values():
    assert build_filter({"tags[in]": "bw,film"}, FIELDS) == {"tags": {"$in": ["bw", "film"]}}


def test_search_overrides_field_filters():
    assert build_filter({"search": "sunset", "category": "nature"}, FIELDS) == {"$text": {"$search": "sunset"}}


@pytest.mark.parametrize("key", ["password_hash", "$where", "price[regex]"])
def test_rejects_unknown_fields_and_operators(key):
    with pytest.raises(ValidationError):
        build_filter({key: "x"}, FIELDS)


def test_sort_and_select():
    assert parse_sort("-price,name", "-created_at") == [("price", DESCENDING), ("name", ASCENDING)]
    assert parse_sort(None, "-uploaded_at") == [("uploaded_at", DESCENDING)]
    assert parse_select("title,image_url") == {"title": 1, "image_url": 1}
    assert parse_select("") is None


def test_page_params_are_clamped():
    assert page_params(None, None) == (1, 10)
    assert page_params("0", "1000") == (1, 100)
    with pytest.raises(ValidationError):
        page_params("two", None)
