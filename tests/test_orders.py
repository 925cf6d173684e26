import re

import pytest

import orders
from conftest import create_shop, register

ITEMS = [
    {"productId": "p1", "productName": "Basmati Rice", "price": 50, "quantity": 2},
    {"productId": "p2", "name": "Toor Dal", "price": 120.5, "quantity": 1},
]


def place_order(client, user, shop, items=ITEMS, total=220.5, payment="cash", **extra):
    payload = {"shopId": shop["id"], "items": items, "totalAmount": total, "paymentMethod": payment, **extra}
    return client.post("/api/orders", json=payload, headers=user["headers"])


def set_status(client, user, order_id, status):
    return client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=user["headers"])


@pytest.fixture
def order(client, buyer, shop):
    res = place_order(client, buyer, shop)
    assert res.status_code == 201, res.text
    return res.json()["order"]


def test_create_order_snapshots_items(order, buyer, shop):
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["user_id"] == buyer["user"]["id"]
    assert order["shop_id"] == shop["id"]
    assert order["total_amount"] == 220.5
    assert re.match(r"^ORD-[0-9A-Z]+-[0-9A-Z]{5}$", order["order_number"])
    assert [(i["name"], i["price"], i["quantity"], i["subtotal"]) for i in order["items"]] == [
        ("Basmati Rice", 50, 2, 100),
        ("Toor Dal", 120.5, 1, 120.5),
    ]


def test_online_order_is_marked_paid(client, buyer, shop):
    res = place_order(client, buyer, shop, payment="online", deliveryAddress="Flat 4B", notes="Ring twice")
    order = res.json()["order"]
    assert order["payment_status"] == "paid"
    assert order["delivery_address"] == "Flat 4B"
    assert order["notes"] == "Ring twice"


def test_order_with_no_items(client, buyer, shop):
    res = place_order(client, buyer, shop, items=[], total=10)
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "Order must have at least one item"}


def test_order_missing_fields(client, buyer, shop):
    res = client.post("/api/orders", json={"shopId": shop["id"], "items": ITEMS}, headers=buyer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Missing required fields"


def test_order_total_must_match_items(client, buyer, shop):
    res = place_order(client, buyer, shop, total=1)
    assert res.status_code == 400
    assert "does not match" in res.json()["message"]


def test_order_for_unknown_shop(client, buyer):
    res = place_order(client, buyer, {"id": "64b7f0000000000000000000"})
    assert res.status_code == 404


def test_order_snapshot_ignores_later_price_change(client, owner, buyer, shop, product):
    items = [{"productId": product["id"], "productName": product["name"], "price": 50, "quantity": 3}]
    created = place_order(client, buyer, shop, items=items, total=150).json()["order"]
    client.put(f"/api/products/{product['id']}", json={"price": 99}, headers=owner["headers"])
    fetched = client.get(f"/api/orders/{created['id']}", headers=buyer["headers"]).json()["order"]
    assert fetched["items"][0]["price"] == 50
    assert fetched["total_amount"] == 150


def test_stock_is_not_decremented(client, buyer, shop, product):
    items = [{"productId": product["id"], "productName": product["name"], "price": 50, "quantity": 3}]
    place_order(client, buyer, shop, items=items, total=150)
    assert client.get(f"/api/products/{product['id']}").json()["product"]["stock"] == 20


def test_forward_status_flow(client, owner, order):
    for status in ("confirmed", "preparing", "ready", "completed"):
        res = set_status(client, owner, order["id"], status)
        assert res.status_code == 200, res.text
        assert res.json()["order"]["status"] == status


def test_illegal_transition_rejected(client, owner, order):
    res = set_status(client, owner, order["id"], "completed")
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot change order status from pending to completed"


def test_preparing_cannot_be_cancelled_by_shop(client, owner, order):
    set_status(client, owner, order["id"], "confirmed")
    set_status(client, owner, order["id"], "preparing")
    assert set_status(client, owner, order["id"], "cancelled").status_code == 400


def test_invalid_status(client, owner, order):
    res = set_status(client, owner, order["id"], "shipped")
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid status"


def test_status_update_unknown_order(client, owner):
    assert set_status(client, owner, "64b7f0000000000000000000", "confirmed").status_code == 404


def test_only_shop_owner_updates_status(client, buyer, other_owner, order):
    assert set_status(client, buyer, order["id"], "confirmed").status_code == 403
    assert set_status(client, other_owner, order["id"], "confirmed").status_code == 403


def test_cancel_pending_order(client, buyer, order):
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "cancelled"
    assert res.json()["order"]["payment_status"] == "pending"


def test_cancel_paid_order_marks_refund(client, buyer, shop):
    paid = place_order(client, buyer, shop, payment="online").json()["order"]
    res = client.put(f"/api/orders/{paid['id']}/cancel", headers=buyer["headers"])
    assert res.json()["order"]["payment_status"] == "refunded"


def test_cancel_completed_order(client, buyer, owner, order):
    for status in ("confirmed", "preparing", "ready", "completed"):
        set_status(client, owner, order["id"], status)
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot cancel order with status: completed"


def test_cancel_twice(client, buyer, order):
    client.put(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot cancel order with status: cancelled"


def test_only_buyer_cancels(client, owner, order):
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=owner["headers"])
    assert res.status_code == 403


def test_get_order_visible_to_buyer_and_shop_owner(client, buyer, owner, other_owner, order, shop):
    as_buyer = client.get(f"/api/orders/{order['id']}", headers=buyer["headers"])
    assert as_buyer.status_code == 200
    body = as_buyer.json()["order"]
    assert body["shop"]["name"] == shop["name"]
    assert body["user"]["mobile"] == buyer["user"]["mobile"]

    assert client.get(f"/api/orders/{order['id']}", headers=owner["headers"]).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=other_owner["headers"]).status_code == 403


def test_get_unknown_order(client, buyer):
    assert client.get("/api/orders/64b7f0000000000000000000", headers=buyer["headers"]).status_code == 404


def test_my_orders(client, buyer, shop, order):
    other_buyer = register(client, "9000000009")
    place_order(client, other_buyer, shop)
    res = client.get("/api/orders/my-orders", headers=buyer["headers"])
    listed = res.json()["orders"]
    assert [o["id"] for o in listed] == [order["id"]]
    assert listed[0]["shop"] == {"id": shop["id"], "name": shop["name"]}


def test_shop_orders_filtered_by_status(client, buyer, owner, shop, order):
    second = place_order(client, buyer, shop).json()["order"]
    set_status(client, owner, second["id"], "confirmed")

    res = client.get("/api/orders/shop-orders", params={"shopId": shop["id"]}, headers=owner["headers"])
    assert sorted(o["id"] for o in res.json()["orders"]) == sorted([order["id"], second["id"]])
    assert res.json()["orders"][0]["user"]["name"] == buyer["user"]["name"]

    res = client.get("/api/orders/shop-orders", params={"shopId": shop["id"], "status": "confirmed"},
                     headers=owner["headers"])
    assert [o["id"] for o in res.json()["orders"]] == [second["id"]]


def test_shop_orders_guarded(client, buyer, other_owner, shop):
    res = client.get("/api/orders/shop-orders", headers=buyer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Shop ID is required"
    res = client.get("/api/orders/shop-orders", params={"shopId": shop["id"]}, headers=other_owner["headers"])
    assert res.status_code == 403


def test_transition_table():
    assert orders.can_transition("pending", "confirmed")
    assert orders.can_transition("confirmed", "cancelled")
    assert not orders.can_transition("preparing", "cancelled")
    assert not orders.can_transition("ready", "pending")
    assert not any(orders.can_transition("completed", s) for s in orders.ALLOWED_TRANSITIONS)
    assert not any(orders.can_transition("cancelled", s) for s in orders.ALLOWED_TRANSITIONS)


def test_order_numbers_are_distinct():
    numbers = {orders.generate_order_number() for _ in range(50)}
    assert len(numbers) == 50


def test_fractional_price_keeps_exact_subtotal(client, buyer, shop):
    items = [{"productName": "Loose Cardamom", "price": 0.333, "quantity": 3}]
    res = place_order(client, buyer, shop, items=items, total=0.999)
    assert res.status_code == 201, res.text
    order = res.json()["order"]
    assert order["items"][0]["subtotal"] == 0.333 * 3
    assert order["total_amount"] == 0.999


def test_zero_total_order_with_free_items(client, buyer, shop):
    items = [{"productName": "Free Carry Bag", "price": 0, "quantity": 1}]
    res = place_order(client, buyer, shop, items=items, total=0)
    assert res.status_code == 201, res.text
    assert res.json()["order"]["total_amount"] == 0


def test_negative_total_rejected(client, buyer, shop):
    items = [{"productName": "Free Carry Bag", "price": 0, "quantity": 1}]
    assert place_order(client, buyer, shop, items=items, total=-0.005).status_code == 400


@pytest.mark.parametrize("reached", [["confirmed", "preparing"], ["confirmed", "preparing", "ready"]])
def test_buyer_cancels_order_in_progress(client, buyer, owner, order, reached):
    for status in reached:
        set_status(client, owner, order["id"], status)
    res = client.put(f"/api/orders/{order['id']}/cancel", headers=buyer["headers"])
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "cancelled"
