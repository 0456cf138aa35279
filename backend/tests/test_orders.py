"""
Tests for orders.py: checkout total verification and order bookkeeping
"""

import pytest
from bson import ObjectId

from auth import Identity
from errors import BadRequestError, NotFoundError, ValidationError
from orders import (
    OrderDraft,
    OrderTotalValidator,
    create_order,
    find_order,
    list_orders,
    normalize_phone,
    sanitize_text,
    update_order_status,
    verify_order_total,
)

CATALOG = {
    "A": {"_id": "A", "title": "Lime Tart", "price": 100},
    "B": {"_id": "B", "title": "Lime Soda", "price": 250},
    "X": {"_id": "X", "title": "Display Sample", "price": None},
}


def checkout_payload(**overrides):
    payload = {
        "items": ["A", "B"],
        "total": 350,
        "address": "Tverskaya 1",
        "payment": "card",
        "phone": "+7 912 345-67-89",
        "email": "Buyer@Example.com",
        "comment": "",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def identity(customer_user):
    return Identity(
        user_id=str(customer_user["_id"]), email=customer_user["email"], role="customer"
    )


class TestVerifyOrderTotal:
    def test_matching_total(self):
        assert verify_order_total(["A", "B"], 350, CATALOG) == 350

    def test_mismatch(self):
        with pytest.raises(BadRequestError) as exc:
            verify_order_total(["A", "B"], 300, CATALOG)
        assert exc.value.message == "order total mismatch"

    def test_unknown_item_is_named(self):
        with pytest.raises(BadRequestError) as exc:
            verify_order_total(["A", "Z"], 100, CATALOG)
        assert "Z" in exc.value.message

    def test_unpriced_item(self):
        with pytest.raises(BadRequestError) as exc:
            verify_order_total(["X"], 0, CATALOG)
        assert "not for sale" in exc.value.message

    def test_repeated_items_count_each_time(self):
        assert verify_order_total(["A", "A", "B"], 450, CATALOG) == 450

    def test_float_rounding_is_tolerated(self):
        catalog = {"c": {"_id": "c", "price": 0.1}, "d": {"_id": "d", "price": 0.2}}
        assert verify_order_total(["c", "d"], 0.3, catalog) == pytest.approx(0.3)


class TestOrderDraft:
    @pytest.mark.parametrize("items", [None, [], "A", [""], [1]])
    def test_invalid_items(self, items):
        with pytest.raises(ValidationError) as exc:
            OrderDraft.from_payload(checkout_payload(items=items))
        assert exc.value.field == "items"

    @pytest.mark.parametrize("total", [None, "350", True, float("nan")])
    def test_invalid_total(self, total):
        with pytest.raises(ValidationError) as exc:
            OrderDraft.from_payload(checkout_payload(total=total))
        assert exc.value.field == "total"

    def test_non_object_payload(self):
        with pytest.raises(BadRequestError):
            OrderDraft.from_payload(["A"])


class TestOrderTotalValidator:
    def test_builds_persistable_order(self, settings, identity):
        validator = OrderTotalValidator(settings, lambda: CATALOG.values())
        order = validator.build_order(checkout_payload(), identity)

        assert order["totalAmount"] == 350
        assert order["products"] == ["A", "B"]
        assert order["status"] == "new"
        assert order["phone"] == "+79123456789"
        assert order["email"] == "buyer@example.com"
        assert str(order["customer"]) == identity.user_id

    def test_catalog_is_reloaded_for_every_order(self, settings, identity):
        prices = {"A": 100}
        calls = []

        def load_catalog():
            calls.append(1)
            return [{"_id": "A", "price": prices["A"]}]

        validator = OrderTotalValidator(settings, load_catalog)
        validator.build_order(checkout_payload(items=["A"], total=100), identity)

        prices["A"] = 120
        with pytest.raises(BadRequestError):
            validator.build_order(checkout_payload(items=["A"], total=100), identity)
        validator.build_order(checkout_payload(items=["A"], total=120), identity)
        assert len(calls) == 3

    def test_anonymous_caller(self, settings):
        validator = OrderTotalValidator(settings, lambda: CATALOG.values())
        with pytest.raises(NotFoundError):
            validator.build_order(checkout_payload(), None)

    def test_text_fields_are_escaped_and_capped(self, settings, identity):
        validator = OrderTotalValidator(settings, lambda: CATALOG.values())
        order = validator.build_order(
            checkout_payload(comment="<script>alert(1)</script>", address="x" * 500),
            identity,
        )
        assert "<script>" not in order["comment"]
        assert "&lt;script&gt;" in order["comment"]
        assert len(order["deliveryAddress"]) == settings.address_max_length


class TestTextHelpers:
    def test_sanitize_text_caps_before_escaping(self):
        assert sanitize_text("  <b>  ", 3) == "&lt;b&gt;"

    def test_sanitize_text_handles_none(self):
        assert sanitize_text(None, 10) == ""

    def test_normalize_phone(self):
        assert normalize_phone("8 (912) 345-67-89", "RU") == "+79123456789"

    @pytest.mark.parametrize("phone", ["", "12", "not a phone"])
    def test_invalid_phone(self, phone):
        with pytest.raises(BadRequestError):
            normalize_phone(phone, "RU")


class TestOrderBookkeeping:
    def test_create_order_updates_customer(self, db, settings, identity, customer_user):
        for product in CATALOG.values():
            db.products.insert_one(dict(product))
        validator = OrderTotalValidator(settings, lambda: db.products.find({}))

        first = create_order(db, validator, checkout_payload(), identity)
        second = create_order(db, validator, checkout_payload(items=["A"], total=100), identity)

        assert (first["orderNumber"], second["orderNumber"]) == (1, 2)
        customer = db.users.find_one({"_id": customer_user["_id"]})
        assert customer["orders"] == [first["_id"], second["_id"]]
        assert customer["lastOrder"] == second["_id"]
        assert customer["orderCount"] == 2
        assert customer["totalAmount"] == 450

    def test_find_order_hides_other_customers_orders(self, db, identity):
        db.orders.insert_one({"orderNumber": 7, "customer": ObjectId()})
        assert find_order(db, "7")["orderNumber"] == 7
        with pytest.raises(NotFoundError):
            find_order(db, "7", owner=identity)

    def test_find_order_rejects_bad_number(self, db):
        with pytest.raises(BadRequestError):
            find_order(db, "7abc")

    def test_update_status(self, db):
        db.orders.insert_one({"orderNumber": 3, "status": "new"})
        assert update_order_status(db, "3", "delivering")["status"] == "delivering"
        with pytest.raises(ValidationError):
            update_order_status(db, "3", "lost")
        with pytest.raises(NotFoundError):
            update_order_status(db, "4", "completed")

    def test_own_listing_is_scoped_and_uses_own_limit(self, db, settings, identity):
        owner_id = ObjectId(identity.user_id)
        for number in range(1, 9):
            db.orders.insert_one({"orderNumber": number, "customer": owner_id})
        db.orders.insert_one({"orderNumber": 99, "customer": ObjectId()})

        page = list_orders(db, {"limit": "50"}, settings, owner=identity)

        assert page.total == 8
        assert page.limit == settings.own_orders_limit
        assert all(item["customer"] == owner_id for item in page.items)

    def test_search_by_product_title(self, db, settings):
        tart = db.products.insert_one({"title": "Lime Tart", "price": 100}).inserted_id
        soda = db.products.insert_one({"title": "Soda", "price": 50}).inserted_id
        db.orders.insert_one({"orderNumber": 1, "products": [tart, soda]})
        db.orders.insert_one({"orderNumber": 2, "products": [soda]})

        page = list_orders(db, {"search": "tart"}, settings)
        assert [item["orderNumber"] for item in page.items] == [1]

        page = list_orders(db, {"search": "2"}, settings)
        assert [item["orderNumber"] for item in page.items] == [2]
