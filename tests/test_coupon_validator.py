"""Coupon validation rules and coupon administration."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.model import Coupon
from app.services import coupon_service
from app.utils.errors import ValidationError

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _coupon(**fields) -> Coupon:
    base = {
        "code": "SAVE10",
        "discount_type": "percent",
        "discount_value": Decimal("10"),
        "is_active": True,
        "times_used": 0,
    }
    base.update(fields)
    return Coupon(**base)


def test_usage_limit_reached_rejects_regardless_of_other_fields() -> None:
    coupon = _coupon(
        usage_limit=3,
        times_used=3,
        valid_from=NOW - timedelta(days=1),
        valid_to=NOW + timedelta(days=1),
    )
    assert coupon_service.is_currently_valid(coupon, NOW) == (False, "Coupon usage limit reached")


def test_active_coupon_in_window_is_valid() -> None:
    coupon = _coupon(usage_limit=3, times_used=2, valid_from=NOW - timedelta(days=1))
    assert coupon_service.is_currently_valid(coupon, NOW) == (True, None)


@pytest.mark.parametrize(
    "fields, reason",
    [
        ({"is_active": False}, "Coupon is inactive"),
        ({"valid_from": NOW + timedelta(hours=1)}, "Coupon not yet valid"),
        ({"valid_to": NOW - timedelta(seconds=1)}, "Coupon expired"),
    ],
)
def test_invalid_coupon_reasons(fields, reason) -> None:
    assert coupon_service.is_currently_valid(_coupon(**fields), NOW) == (False, reason)


def test_min_purchase_reason_names_amount() -> None:
    valid, reason = coupon_service.meets_min_purchase(_coupon(min_purchase=Decimal("50")), Decimal("40"))
    assert not valid
    assert reason == "Minimum order amount for this coupon is 50.00"
    assert coupon_service.meets_min_purchase(_coupon(min_purchase=Decimal("50")), Decimal("50")) == (True, None)


def test_applicable_products_allow_list() -> None:
    coupon = _coupon(applicable_products=[1, 2])
    assert coupon_service.is_applicable_to_products(coupon, [1, 2]) == (True, None)
    valid, _ = coupon_service.is_applicable_to_products(coupon, [1, 3])
    assert not valid


def test_excluded_products_deny_list() -> None:
    coupon = _coupon(excluded_products=[7])
    valid, reason = coupon_service.is_applicable_to_products(coupon, [1, 7])
    assert not valid
    assert reason == "Coupon cannot be applied to one or more products"


def test_validate_for_items_reports_first_failure() -> None:
    coupon = _coupon(valid_to=NOW - timedelta(days=1), min_purchase=Decimal("500"))
    assert coupon_service.validate_for_items(coupon, Decimal("10"), [1], NOW) == (False, "Coupon expired")


def test_fixed_coupon_capped_by_max_discount() -> None:
    coupon = _coupon(code="FLAT20", discount_type="fixed", discount_value=Decimal("20"), max_discount=Decimal("15"))
    for sub in ("16", "100", "999.99"):
        assert coupon_service.compute_discount(coupon, Decimal(sub)) == Decimal("15.00")


def test_find_active_by_code_is_case_insensitive(make_coupon) -> None:
    make_coupon(code="SAVE10")
    assert coupon_service.find_active_by_code(" save10 ").code == "SAVE10"


def test_find_active_by_code_ignores_short_and_inactive(make_coupon) -> None:
    make_coupon(code="AB")
    make_coupon(code="OFFNOW", is_active=False)
    assert coupon_service.find_active_by_code("ab") is None
    assert coupon_service.find_active_by_code("OFFNOW") is None


# ---- administration --------------------------------------------------------

def test_create_coupon_uppercases_code(app) -> None:
    coupon = coupon_service.create_coupon_from_payload({
        "code": "spring25",
        "discount_type": "percent",
        "discount_value": 25,
        "max_discount": 40,
        "valid_from": "2026-03-01T00:00:00Z",
        "valid_to": "2026-04-01T00:00:00Z",
        "applicable_products": [1, "2"],
    })
    assert coupon.code == "SPRING25"
    assert coupon.max_discount == Decimal("40")
    assert coupon.applicable_products == [1, 2]
    assert coupon.times_used == 0


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"code": "BIGONE", "discount_type": "percent", "discount_value": 120}, "percent discount must be <= 100"),
        ({"code": "ZERO1", "discount_type": "fixed", "discount_value": 0}, "discount_value must be > 0"),
        ({"code": "WEIRD1", "discount_type": "bogo", "discount_value": 5}, "discount_type must be 'percent' or 'fixed'"),
        (
            {
                "code": "WINDOW",
                "discount_type": "fixed",
                "discount_value": 5,
                "valid_from": "2026-05-01T00:00:00",
                "valid_to": "2026-04-01T00:00:00",
            },
            "valid_from must be before valid_to",
        ),
    ],
)
def test_create_coupon_rejects_bad_payloads(app, payload, message) -> None:
    with pytest.raises(ValidationError) as exc:
        coupon_service.create_coupon_from_payload(payload)
    assert exc.value.message == message


def test_create_coupon_rejects_duplicate_code(make_coupon) -> None:
    make_coupon(code="SAVE10")
    with pytest.raises(ValidationError):
        coupon_service.create_coupon_from_payload(
            {"code": "save10", "discount_type": "percent", "discount_value": 5}
        )


def test_update_coupon_keeps_code_immutable(make_coupon) -> None:
    coupon = make_coupon(code="SAVE10")
    with pytest.raises(ValidationError):
        coupon_service.update_coupon_from_payload(coupon.id, {"code": "OTHER"})

    updated = coupon_service.update_coupon_from_payload(coupon.id, {"discount_value": 15, "usage_limit": 100})
    assert updated.discount_value == Decimal("15")
    assert updated.usage_limit == 100
    assert updated.discount_type == "percent"


def test_delete_coupon_detaches_carts(user, make_product, make_coupon, fill_cart) -> None:
    coupon = make_coupon(code="SAVE10")
    cart = fill_cart(user, (make_product(price="30"), 2), coupon="SAVE10")
    assert cart.coupon_id == coupon.id

    coupon_service.delete_coupon(coupon.id)

    assert Coupon.query.count() == 0
    assert cart.coupon_id is None
