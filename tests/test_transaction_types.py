import pytest

from report_query.transaction_types import (
    KNOWN_TRANSACTION_TYPES,
    extract_types_from_query,
    filter_known_types,
    normalize,
)


@pytest.mark.parametrize("token, expected", [
    ("create order", "CREATE_ORDER"),
    ("CREATEORDER", "CREATE_ORDER"),
    ("  change   order ", "CHANGE_ORDER"),
    ("refund in", "REFUND_TRANS_IN"),
    ("transaction out", "TRANS_OUT"),
    ("fulfilled_sale", "FULFILLED_SALE"),
    ("shipment", None),
    ("", None),
])
def test_normalize(token, expected):
    assert normalize(token) == expected


def test_every_known_type_normalizes_to_itself():
    for txn_type in KNOWN_TRANSACTION_TYPES:
        assert normalize(txn_type) == txn_type
        assert normalize(txn_type.lower().replace("_", " ")) == txn_type


def test_extract_types_from_query():
    found = extract_types_from_query("compare create order totals with refund out")
    assert found == {"CREATE_ORDER", "REFUND_TRANS_OUT"}


def test_extract_types_respects_word_boundaries():
    assert extract_types_from_query("recreated the changelog") == set()


def test_extract_types_empty_query():
    assert extract_types_from_query("") == set()


def test_filter_known_types_drops_unknown_values():
    assert filter_known_types(["create_order", "bogus", 3, "Trans In"]) == {"CREATE_ORDER", "TRANS_IN"}


def test_underscore_is_a_word_character():
    assert extract_types_from_query("RECREATE_ORDER_LOG") == set()
    assert extract_types_from_query("see CREATE_ORDER_LOG") == set()
    assert extract_types_from_query("(CREATE_ORDER)") == {"CREATE_ORDER"}
