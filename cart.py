"""
Cart consolidation.

A user holds at most one cart per shop and at most one line per product in
each cart; the unique (cart_id, product_id) index backs the second rule and
adds are single ``$inc`` upserts against it. Prices are never stored on cart
lines: every read joins the live product and recomputes the total.
"""
from typing import Any, Dict, List

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from database import find_by_id, to_object_id, utcnow
from errors import CartNotFound, InvalidQuantity, ItemNotFound, NotFoundError, ValidationError
from schemas import Cart, CartItem

logger = structlog.get_logger(__name__)


def _user_cart_ids(db: Database, user_id: str) -> List[str]:
    return [str(c["_id"]) for c in db["cart"].find({"user_id": user_id}, {"_id": 1})]


def _require_cart_ids(db: Database, user_id: str) -> List[str]:
    cart_ids = _user_cart_ids(db, user_id)
    if not cart_ids:
        raise CartNotFound()
    return cart_ids


def cart_view(db: Database, cart_ids: List[str]) -> Dict[str, Any]:
    """Join cart lines with current product and shop data."""
    lines = list(db["cart_item"].find({"cart_id": {"$in": cart_ids}}).sort("created_at", 1))
    carts = {str(c["_id"]): c for c in db["cart"].find({"_id": {"$in": [to_object_id(i) for i in cart_ids]}})}
    product_ids = [to_object_id(line["product_id"]) for line in lines]
    products = {
        str(p["_id"]): p
        for p in db["product"].find({"_id": {"$in": [pid for pid in product_ids if pid is not None]}})
    }

    items = []
    total = 0.0
    for line in lines:
        product = products.get(line["product_id"])
        if not product:
            continue
        cart = carts.get(line["cart_id"], {})
        price = float(product.get("price", 0))
        subtotal = price * line["quantity"]
        total += subtotal
        items.append({
            "productId": line["product_id"],
            "productName": product.get("name"),
            "price": price,
            "quantity": line["quantity"],
            "subtotal": subtotal,
            "shopId": product.get("shop_id") or cart.get("shop_id"),
            "shopName": cart.get("shop_name"),
            "image": product.get("image"),
            "unit": product.get("unit"),
        })
    return {"items": items, "total": total}


def get_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart_ids = _user_cart_ids(db, user_id)
    if not cart_ids:
        return {"items": [], "total": 0.0}
    return cart_view(db, cart_ids)


def add_item(db: Database, user_id: str, product_id: str, shop_id: str, shop_name: str, quantity: int = 1) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product = find_by_id(db, "product", product_id)
    if not product:
        raise NotFoundError("Product not found")
    if product.get("shop_id") != shop_id:
        raise ValidationError("Product does not belong to this shop")

    now = utcnow()
    header = Cart(user_id=user_id, shop_id=shop_id, shop_name=shop_name)
    cart = db["cart"].find_one_and_update(
        header.model_dump(include={"user_id", "shop_id"}),
        {
            "$set": {"shop_name": header.shop_name, "updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    cart_id = str(cart["_id"])
    line = CartItem(cart_id=cart_id, product_id=product_id, quantity=quantity)
    db["cart_item"].update_one(
        line.model_dump(include={"cart_id", "product_id"}),
        {
            "$inc": {"quantity": line.quantity},
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
    logger.info("cart_item_added", user_id=user_id, cart_id=cart_id, product_id=product_id, quantity=quantity)
    return cart_view(db, [cart_id])


def update_quantity(db: Database, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
    """Set a line's quantity exactly; zero removes the line."""
    if quantity < 0:
        raise InvalidQuantity()
    cart_ids = _require_cart_ids(db, user_id)
    line = db["cart_item"].find_one({"cart_id": {"$in": cart_ids}, "product_id": product_id})
    if not line:
        raise ItemNotFound()
    if quantity == 0:
        db["cart_item"].delete_one({"_id": line["_id"]})
    else:
        db["cart_item"].update_one({"_id": line["_id"]}, {"$set": {"quantity": quantity, "updated_at": utcnow()}})
    return cart_view(db, cart_ids)


def remove_item(db: Database, user_id: str, product_id: str) -> Dict[str, Any]:
    cart_ids = _require_cart_ids(db, user_id)
    db["cart_item"].delete_many({"cart_id": {"$in": cart_ids}, "product_id": product_id})
    return cart_view(db, cart_ids)


def clear_cart(db: Database, user_id: str) -> Dict[str, Any]:
    cart_ids = _require_cart_ids(db, user_id)
    removed = db["cart_item"].delete_many({"cart_id": {"$in": cart_ids}}).deleted_count
    logger.info("cart_cleared", user_id=user_id, lines_removed=removed)
    return {"items": [], "total": 0.0}
