from datetime import datetime, timezone

import pytest

from shutupnrave.helpers import (
    Pagination, clamp_limit, clamp_page, format_naira, is_valid_email,
    to_iso, fail, ok,
)


@pytest.mark.parametrize("amount, expected", [
    (15000, "₦15,000"),
    (3500.0, "₦3,500"),
    (1234.5, "₦1,234.50"),
    (None, "₦0"),
])
def test_format_naira(amount, expected):
    assert format_naira(amount) == expected


def test_pagination_build():
    p = Pagination.build(page=2, limit=15, total_count=31)
    assert p.total_pages == 3
    assert p.has_next and p.has_previous
    assert p.offset == 15
    assert p.as_dict()["current_page"] == 2


def test_pagination_last_page_has_no_next():
    p = Pagination.build(page=1, limit=20, total_count=0)
    assert p.total_pages == 0
    assert not p.has_next
    assert not p.has_previous


def test_limits_are_clamped():
    assert clamp_limit(500, 15) == 100
    assert clamp_limit(0, 15) == 1
    assert clamp_limit("oops", 15) == 15
    assert clamp_page(-3) == 1
    assert clamp_page("4") == 4


def test_email_validation():
    assert is_valid_email("ada@example.com")
    assert not is_valid_email("ada@example")
    assert not is_valid_email("")
    assert not is_valid_email(None)


def test_to_iso_treats_naive_as_utc():
    naive = datetime(2025, 11, 29, 12, 0)
    assert to_iso(naive) == "2025-11-29T12:00:00+00:00"
    aware = datetime(2025, 11, 29, 12, 0, tzinfo=timezone.utc)
    assert to_iso(aware) == to_iso(naive)
    assert to_iso(None) is None


def test_result_builders():
    assert fail("nope") == {"success": False, "error": "nope"}
    assert ok(id="x") == {"success": True, "id": "x"}
