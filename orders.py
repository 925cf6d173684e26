"""
Order lifecycle.

An order is written once as a single document holding its item snapshot, so
later product price changes never reach it. Status moves forward only:

    pending -> confirmed -> preparing -> ready -> completed
    pending, confirmed -> cancelled

Buyers may cancel any order that is not yet completed or cancelled.
"""
import secrets
import string
import time
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, find_by_id, get_documents, serialize_doc, utcnow
from errors import (
    AlreadyTerminal,
    AuthorizationError,
    IllegalTransition,
    InvalidStatus,
    NotFoundError,
    ValidationError,
)
from schemas import ORDER_STATUSES, TERMINAL_STATUSES, Order, OrderItem

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"preparing", "cancelled"},
    "preparing": {"ready"},
    "ready": {"completed"},
    "completed": set(),
    "cancelled": set(),
}

PAYMENT_METHODS = ("cash", "online")
TOTAL_TOLERANCE = 0.01
MY_ORDERS_LIMIT = 50
SHOP_ORDERS_LIMIT = 100

_BASE36 = string.digits + string.ascii_lowercase


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_order_number() -> str:
    timestamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"ORD-{timestamp}-{suffix}".upper()


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def _summary(doc: Optional[Dict[str, Any]], fields: List[str]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    out = {"id": str(doc["_id"])}
    for f in fields:
        out[f] = doc.get(f)
    return out


def _order_to_client(db: Database, doc: Dict[str, Any], shop_fields: Optional[List[str]] = None,
                     user_fields: Optional[List[str]] = None) -> Dict[str, Any]:
    order = serialize_doc(doc)
    if shop_fields is not None:
        order["shop"] = _summary(find_by_id(db, "shop", doc.get("shop_id")), shop_fields)
    if user_fields is not None:
        order["user"] = _summary(find_by_id(db, "user", doc.get("user_id")), user_fields)
    return order


def _load(db: Database, order_id: str) -> Dict[str, Any]:
    order = find_by_id(db, "order", order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def _is_shop_owner(db: Database, shop_id: str, user_id: str) -> bool:
    shop = find_by_id(db, "shop", shop_id)
    return bool(shop) and shop.get("owner_id") == user_id


def create_order(
    db: Database,
    user_id: str,
    shop_id: Optional[str],
    items: Optional[List[Dict[str, Any]]],
    total_amount: Optional[float],
    payment_method: Optional[str],
    delivery_address: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    if not shop_id or items is None or total_amount is None or not payment_method:
        raise ValidationError("Missing required fields")
    if not items:
        raise ValidationError("Order must have at least one item")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("Invalid payment method")
    if not find_by_id(db, "shop", shop_id):
        raise NotFoundError("Shop not found")

    snapshot = []
    for item in items:
        name = item.get("product_name") or item.get("name")
        if not name or item.get("price") is None or not item.get("quantity"):
            raise ValidationError("Each item needs a name, price and quantity")
        price = float(item["price"])
        quantity = int(item["quantity"])
        if price < 0 or quantity < 1:
            raise ValidationError("Item price must be non-negative and quantity at least 1")
        snapshot.append(OrderItem(
            product_id=item.get("product_id"),
            name=name,
            price=price,
            quantity=quantity,
            subtotal=price * quantity,
        ))

    computed = sum(i.subtotal for i in snapshot)
    total = float(total_amount)
    if total < 0 or abs(computed - total) > TOTAL_TOLERANCE:
        raise ValidationError(f"Order total {total:.2f} does not match item total {computed:.2f}")

    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        shop_id=shop_id,
        status="pending",
        total_amount=total,
        payment_method=payment_method,
        # online payments are settled client-side before the order is placed
        payment_status="pending" if payment_method == "cash" else "paid",
        delivery_address=delivery_address or None,
        notes=notes or None,
        items=snapshot,
    )
    order_id = create_document(db, "order", order)
    logger.info("order_created", order_id=order_id, order_number=order.order_number, user_id=user_id,
                shop_id=shop_id, total=total)
    return serialize_doc(find_by_id(db, "order", order_id))


def get_order(db: Database, order_id: str, user_id: str) -> Dict[str, Any]:
    order = _load(db, order_id)
    if order.get("user_id") != user_id and not _is_shop_owner(db, order.get("shop_id"), user_id):
        raise AuthorizationError("You do not have permission to view this order")
    return _order_to_client(db, order, shop_fields=["name", "phone", "address"], user_fields=["name", "mobile"])


def list_my_orders(db: Database, user_id: str) -> List[Dict[str, Any]]:
    docs = get_documents(db, "order", {"user_id": user_id}, sort=[("created_at", DESCENDING)], limit=MY_ORDERS_LIMIT)
    return [_order_to_client(db, d, shop_fields=["name"]) for d in docs]


def list_shop_orders(db: Database, shop_id: Optional[str], user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    if not shop_id:
        raise ValidationError("Shop ID is required")
    shop = find_by_id(db, "shop", shop_id)
    if not shop:
        raise NotFoundError("Shop not found")
    if shop.get("owner_id") != user_id:
        raise AuthorizationError("You do not have permission to view orders for this shop")
    filt: Dict[str, Any] = {"shop_id": shop_id}
    if status:
        if status not in ORDER_STATUSES:
            raise InvalidStatus()
        filt["status"] = status
    docs = get_documents(db, "order", filt, sort=[("created_at", DESCENDING)], limit=SHOP_ORDERS_LIMIT)
    return [_order_to_client(db, d, user_fields=["name", "mobile"]) for d in docs]


def update_status(db: Database, order_id: str, new_status: Optional[str], user_id: str) -> Dict[str, Any]:
    if not new_status:
        raise ValidationError("Status is required")
    if new_status not in ORDER_STATUSES:
        raise InvalidStatus()
    order = _load(db, order_id)
    if not _is_shop_owner(db, order.get("shop_id"), user_id):
        raise AuthorizationError("You do not have permission to update this order")
    current = order.get("status")
    if not can_transition(current, new_status):
        raise IllegalTransition(f"Cannot change order status from {current} to {new_status}")

    # the status guard in the filter rejects a concurrent change made since the read
    result = db["order"].update_one(
        {"_id": order["_id"], "status": current},
        {"$set": {"status": new_status, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise IllegalTransition(f"Order status changed concurrently, expected {current}")
    logger.info("order_status_changed", order_id=order_id, from_status=current, to_status=new_status)
    return serialize_doc(_load(db, order_id))


def cancel_order(db: Database, order_id: str, requester_id: str) -> Dict[str, Any]:
    order = _load(db, order_id)
    if order.get("user_id") != requester_id:
        raise AuthorizationError("You do not have permission to cancel this order")
    status = order.get("status")
    if status in TERMINAL_STATUSES:
        raise AlreadyTerminal(f"Cannot cancel order with status: {status}")

    update: Dict[str, Any] = {"status": "cancelled", "updated_at": utcnow()}
    if order.get("payment_status") == "paid":
        update["payment_status"] = "refunded"
    result = db["order"].update_one({"_id": order["_id"], "status": status}, {"$set": update})
    if result.modified_count == 0:
        latest = _load(db, order_id)
        raise AlreadyTerminal(f"Cannot cancel order with status: {latest.get('status')}")
    logger.info("order_cancelled", order_id=order_id, refunded=update.get("payment_status") == "refunded")
    return serialize_doc(_load(db, order_id))
