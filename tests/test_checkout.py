"""Tests for the checkout workflow: pricing, failure paths and stock races."""

import pytest

import carts
import orders
from errors import EmptyCart, InsufficientStock, NotFound, PaymentFailed, ValidationFailed
from payments import FakeGateway


def _cart(db, actor):
    return db["cart"].find_one({"user": actor.user_id})


class TestPricing:
    def test_flat_shipping_at_threshold(self, make_product):
        product = make_product(price="50.00")
        pricing = orders.compute_pricing([(product, 2)])
        assert pricing.items_cents == 10000
        assert pricing.tax_cents == 1000
        assert pricing.shipping_cents == 1000
        assert pricing.total_cents == 12000

    def test_free_shipping_above_threshold(self, make_product):
        product = make_product(price="60.00")
        pricing = orders.compute_pricing([(product, 2)])
        assert pricing.items_cents == 12000
        assert pricing.tax_cents == 1200
        assert pricing.shipping_cents == 0
        assert pricing.total_cents == 13200

    def test_tax_rounds_half_up_to_the_cent(self, make_product):
        product = make_product(price="0.15")
        pricing = orders.compute_pricing([(product, 1)])
        # 10% of 15 cents is 1.5 cents
        assert pricing.tax_cents == 2

    def test_no_float_drift_on_many_small_prices(self, make_product):
        product = make_product(price="0.10")
        pricing = orders.compute_pricing([(product, 3)])
        assert pricing.items_cents == 30
        assert pricing.total_cents == pricing.items_cents + pricing.tax_cents + pricing.shipping_cents


class TestSuccessfulCheckout:
    def test_order_snapshot_and_totals(self, db, shopper, make_product, place_order):
        product = make_product(price="50.00", stock=10, name="Desk Lamp")
        order = place_order(shopper, (product, 2))

        assert order["status"] == "Processing"
        assert order["is_paid"] is True
        assert order["user"] == shopper.user_id
        assert order["items_price_cents"] == 10000
        assert order["tax_price_cents"] == 1000
        assert order["shipping_price_cents"] == 1000
        assert order["total_price_cents"] == 12000
        assert order["items"] == [
            {"product": product["_id"], "name": "Desk Lamp", "quantity": 2, "price_cents": 5000}
        ]
        assert order["payment_result"]["status"] == "succeeded"
        assert order["payment_result"]["id"].startswith("fake_txn_")
        assert order["shipping_address"]["city"] == "Springfield"

    def test_total_is_sum_of_parts(self, shopper, make_product, place_order):
        lamp = make_product(price="19.99", stock=10)
        mug = make_product(price="7.35", stock=10)
        order = place_order(shopper, (lamp, 3), (mug, 4))

        assert order["items_price_cents"] == 1999 * 3 + 735 * 4
        assert order["total_price_cents"] == (
            order["items_price_cents"] + order["tax_price_cents"] + order["shipping_price_cents"]
        )

    def test_decrements_stock_and_clears_cart(self, db, shopper, make_product, place_order, stock_of):
        lamp = make_product(stock=10)
        mug = make_product(stock=4)
        place_order(shopper, (lamp, 2), (mug, 4))

        assert stock_of(lamp) == 8
        assert stock_of(mug) == 0
        cart = _cart(db, shopper)
        assert cart["items"] == []
        assert cart["total_cents"] == 0

    def test_charges_total_in_minor_units(self, shopper, make_product, place_order, gateway):
        product = make_product(price="60.00")
        order = place_order(shopper, (product, 2))

        charge = gateway.calls[-1]
        assert charge["method"] == "charge"
        assert charge["amount_cents"] == 13200
        assert charge["currency"] == orders.CURRENCY
        assert charge["payment_method"] == "pm_card_visa"
        assert charge["idempotency_key"] == f"order-{order['_id']}"

    def test_snapshot_ignores_later_price_change(self, db, shopper, make_product, place_order):
        product = make_product(price="50.00")
        order = place_order(shopper, (product, 1))
        db["product"].update_one({"_id": product["_id"]}, {"$set": {"price_cents": 9900}})

        stored = db["order"].find_one({"_id": order["_id"]})
        assert stored["items"][0]["price_cents"] == 5000


class TestCheckoutFailures:
    def test_empty_cart_without_cart(self, db, gateway, shopper, shipping_address):
        with pytest.raises(EmptyCart):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")
        assert db["order"].count_documents({}) == 0

    def test_empty_cart_with_no_items(self, db, gateway, shopper, shipping_address):
        carts.get_cart(db, shopper)
        with pytest.raises(EmptyCart):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")
        assert db["order"].count_documents({}) == 0
        assert gateway.calls == []

    def test_insufficient_stock_leaves_everything_unchanged(
        self, db, gateway, shopper, make_product, shipping_address, stock_of
    ):
        plenty = make_product(stock=10, name="Plenty")
        scarce = make_product(stock=5, name="Scarce")
        carts.add_item(db, shopper, str(plenty["_id"]), 2)
        carts.add_item(db, shopper, str(scarce["_id"]), 5)
        db["product"].update_one({"_id": scarce["_id"]}, {"$set": {"stock": 1}})
        cart_before = _cart(db, shopper)

        with pytest.raises(InsufficientStock) as exc:
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")

        assert exc.value.product_name == "Scarce"
        assert "Scarce" in exc.value.message
        assert stock_of(plenty) == 10
        assert stock_of(scarce) == 1
        assert _cart(db, shopper)["items"] == cart_before["items"]
        assert db["order"].count_documents({}) == 0
        assert gateway.calls == []

    def test_declined_payment_leaves_everything_unchanged(
        self, db, gateway, shopper, make_product, shipping_address, stock_of
    ):
        product = make_product(stock=10)
        carts.add_item(db, shopper, str(product["_id"]), 3)
        gateway.configure(should_succeed=False, failure_reason="Insufficient funds")

        with pytest.raises(PaymentFailed) as exc:
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_declined")

        assert "Insufficient funds" in exc.value.message
        assert stock_of(product) == 10
        assert _cart(db, shopper)["items"][0]["quantity"] == 3
        assert db["order"].count_documents({}) == 0

    def test_missing_payment_method(self, db, gateway, shopper, make_product, shipping_address):
        product = make_product()
        carts.add_item(db, shopper, str(product["_id"]), 1)
        with pytest.raises(ValidationFailed):
            orders.checkout(db, gateway, shopper, shipping_address, "")

    def test_incomplete_shipping_address(self, db, gateway, shopper, make_product):
        product = make_product()
        carts.add_item(db, shopper, str(product["_id"]), 1)
        with pytest.raises(ValidationFailed):
            orders.checkout(db, gateway, shopper, {"address": "1 Main St"}, "pm_card_visa")

    def test_deleted_product_in_cart(self, db, gateway, shopper, make_product, shipping_address):
        product = make_product()
        carts.add_item(db, shopper, str(product["_id"]), 1)
        db["product"].delete_one({"_id": product["_id"]})
        with pytest.raises(NotFound):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")


class TestCompensation:
    def test_failed_reservation_releases_earlier_reservations(
        self, db, gateway, shopper, make_product, shipping_address, stock_of, monkeypatch
    ):
        first = make_product(stock=10)
        second = make_product(stock=10, name="Second")
        carts.add_item(db, shopper, str(first["_id"]), 4)
        carts.add_item(db, shopper, str(second["_id"]), 4)
        db["product"].update_one({"_id": second["_id"]}, {"$set": {"stock": 3}})
        # skip the pre-check so the conditional reservation is what catches it
        monkeypatch.setattr(orders, "ensure_in_stock", lambda lines: None)

        with pytest.raises(InsufficientStock):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")

        assert stock_of(first) == 10
        assert stock_of(second) == 3
        assert gateway.calls == []

    def test_failed_order_insert_refunds_and_releases(
        self, db, gateway, shopper, make_product, shipping_address, stock_of, monkeypatch
    ):
        product = make_product(stock=10)
        carts.add_item(db, shopper, str(product["_id"]), 2)

        def broken_insert(*args, **kwargs):
            raise RuntimeError("write concern timeout")

        monkeypatch.setattr(orders, "create_document", broken_insert)

        with pytest.raises(RuntimeError):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")

        assert [c["method"] for c in gateway.calls] == ["charge", "refund"]
        assert gateway.calls[1]["amount_cents"] == gateway.calls[0]["amount_cents"]
        assert stock_of(product) == 10
        assert _cart(db, shopper)["items"][0]["quantity"] == 2
        assert db["order"].count_documents({}) == 0

    def test_failed_cart_clear_undoes_order(
        self, db, gateway, shopper, make_product, shipping_address, stock_of, monkeypatch
    ):
        product = make_product(stock=10)
        carts.add_item(db, shopper, str(product["_id"]), 2)

        def broken_clear(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(orders, "empty_cart", broken_clear)

        with pytest.raises(RuntimeError):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")

        assert db["order"].count_documents({}) == 0
        assert stock_of(product) == 10
        assert gateway.calls[-1]["method"] == "refund"

    def test_failed_refund_still_releases_stock(
        self, db, gateway, shopper, make_product, shipping_address, stock_of, monkeypatch
    ):
        product = make_product(stock=10)
        carts.add_item(db, shopper, str(product["_id"]), 2)

        def insert_then_gateway_breaks(*args, **kwargs):
            gateway.configure(should_succeed=False, failure_reason="Gateway unavailable")
            raise RuntimeError("write concern timeout")

        monkeypatch.setattr(orders, "create_document", insert_then_gateway_breaks)

        with pytest.raises(RuntimeError, match="write concern timeout"):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")

        assert [c["method"] for c in gateway.calls] == ["charge", "refund"]
        assert stock_of(product) == 10
        assert db["order"].count_documents({}) == 0

    def test_rollback_continues_past_a_failing_undo(self):
        undone = []
        log = orders.CompensationLog()
        log.add("first", lambda: undone.append("first"))
        log.add("broken", lambda: 1 / 0)
        log.add("third", lambda: undone.append("third"))

        log.rollback()

        assert undone == ["third", "first"]


class TestConcurrentCheckouts:
    def test_interleaved_checkouts_cannot_oversell(
        self, db, gateway, make_user, make_product, shipping_address, stock_of, monkeypatch
    ):
        product = make_product(stock=5)
        alice, bob = make_user(name="Alice"), make_user(name="Bob")
        carts.add_item(db, alice, str(product["_id"]), 3)
        carts.add_item(db, bob, str(product["_id"]), 3)

        real_check = orders.ensure_in_stock

        def check_then_let_alice_finish(lines):
            # Bob passes the stock check while 5 units are still available...
            real_check(lines)
            monkeypatch.setattr(orders, "ensure_in_stock", real_check)
            # ...then Alice completes her whole checkout before Bob reserves.
            orders.checkout(db, gateway, alice, shipping_address, "pm_alice")

        monkeypatch.setattr(orders, "ensure_in_stock", check_then_let_alice_finish)

        with pytest.raises(InsufficientStock):
            orders.checkout(db, gateway, bob, shipping_address, "pm_bob")

        assert stock_of(product) == 2
        assert db["order"].count_documents({}) == 1
        assert db["order"].find_one({})["user"] == alice.user_id
        assert [c["payment_method"] for c in gateway.calls] == ["pm_alice"]
        assert _cart(db, bob)["items"][0]["quantity"] == 3

    def test_checkout_during_payment_sees_reserved_stock(
        self, db, make_user, make_product, shipping_address, stock_of
    ):
        product = make_product(stock=5)
        alice, bob = make_user(name="Alice"), make_user(name="Bob")
        carts.add_item(db, alice, str(product["_id"]), 3)
        carts.add_item(db, bob, str(product["_id"]), 3)
        outcomes = []

        class SlowGateway(FakeGateway):
            def charge(self, amount_cents, currency, payment_method, idempotency_key):
                if payment_method == "pm_alice":
                    # Bob checks out while Alice's payment is still in flight
                    try:
                        orders.checkout(db, self, bob, shipping_address, "pm_bob")
                    except InsufficientStock:
                        outcomes.append("bob rejected")
                return super().charge(amount_cents, currency, payment_method, idempotency_key)

        orders.checkout(db, SlowGateway(), alice, shipping_address, "pm_alice")

        assert outcomes == ["bob rejected"]
        assert stock_of(product) == 2
        assert db["order"].count_documents({}) == 1

    def test_double_submitted_checkout_places_one_order(
        self, db, shopper, make_product, shipping_address, stock_of
    ):
        product = make_product(stock=10)
        carts.add_item(db, shopper, str(product["_id"]), 2)

        class DoubleSubmitGateway(FakeGateway):
            resubmitted = False

            def charge(self, amount_cents, currency, payment_method, idempotency_key):
                if not self.resubmitted:
                    # the same cart is submitted again while the first charge is in flight
                    self.resubmitted = True
                    orders.checkout(db, self, shopper, shipping_address, "pm_card_visa")
                return super().charge(amount_cents, currency, payment_method, idempotency_key)

        gateway = DoubleSubmitGateway()
        with pytest.raises(EmptyCart):
            orders.checkout(db, gateway, shopper, shipping_address, "pm_card_visa")

        assert db["order"].count_documents({}) == 1
        assert stock_of(product) == 8
        charges = [c for c in gateway.calls if c["method"] == "charge"]
        refunds = [c for c in gateway.calls if c["method"] == "refund"]
        assert len(charges) == 2
        assert len(refunds) == 1
        order = db["order"].find_one({})
        assert refunds[0]["transaction_id"] != order["payment_result"]["id"]
        assert _cart(db, shopper)["items"] == []
