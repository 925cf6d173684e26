"""
Shop and product catalog.

Read paths filter and sort the ``shop`` and ``product`` collections; write
paths go through the ownership guard, which loads the resource and checks
that the acting user owns the shop it belongs to.
"""
import re
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, find_by_id, get_documents, serialize_doc, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError
from schemas import Product, Shop

logger = structlog.get_logger(__name__)

RESULT_LIMIT = 100


def _contains(text: str) -> Dict[str, Any]:
    return {"$regex": re.escape(text), "$options": "i"}


def _text_search(search: str) -> Dict[str, Any]:
    return {"$or": [{"name": _contains(search)}, {"description": _contains(search)}]}


def shop_to_client(doc: Dict[str, Any]) -> Dict[str, Any]:
    shop = serialize_doc(doc)
    coords = shop.get("coordinates") or None
    if coords and coords.get("lat") is not None and coords.get("lng") is not None:
        shop["coordinates"] = {"lat": float(coords["lat"]), "lng": float(coords["lng"])}
    else:
        shop["coordinates"] = None
    return shop


# ----------------------- Ownership guard -----------------------

def ensure_shop_owner(db: Database, shop_id: str, user: Dict[str, Any], action: str = "update this shop") -> Dict[str, Any]:
    shop = find_by_id(db, "shop", shop_id)
    if not shop:
        raise NotFoundError("Shop not found")
    if shop.get("owner_id") != user["id"]:
        raise AuthorizationError(f"You do not have permission to {action}")
    return shop


def ensure_product_owner(db: Database, product_id: str, user: Dict[str, Any], action: str = "update this product") -> Dict[str, Any]:
    product = find_by_id(db, "product", product_id)
    if not product:
        raise NotFoundError("Product not found")
    shop = find_by_id(db, "shop", product.get("shop_id"))
    if not shop or shop.get("owner_id") != user["id"]:
        raise AuthorizationError(f"You do not have permission to {action}")
    return product


# ----------------------- Shops -----------------------

def search_shops(
    db: Database,
    category: Optional[str] = None,
    city: Optional[str] = None,
    is_open: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = RESULT_LIMIT,
) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if category:
        filt["category"] = category
    if city:
        filt["city"] = _contains(city)
    if is_open is not None:
        filt["is_open"] = is_open
    if search:
        filt.update(_text_search(search))
    docs = get_documents(db, "shop", filt, sort=[("rating", DESCENDING), ("created_at", DESCENDING)], limit=limit)
    return [shop_to_client(d) for d in docs]


def list_owner_shops(db: Database, owner_id: str) -> List[Dict[str, Any]]:
    docs = get_documents(db, "shop", {"owner_id": owner_id}, sort=[("created_at", DESCENDING)], limit=0)
    return [shop_to_client(d) for d in docs]


def get_shop(db: Database, shop_id: str) -> Dict[str, Any]:
    shop = find_by_id(db, "shop", shop_id)
    if not shop:
        raise NotFoundError("Shop not found")
    return shop_to_client(shop)


def create_shop(db: Database, user: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    if user.get("role") != "shopowner":
        raise AuthorizationError("Only shop owners can create shops")
    if db["shop"].find_one({"owner_id": user["id"], "name": data["name"]}):
        raise ConflictError("You already have a shop with this name")
    shop = Shop(owner_id=user["id"], is_open=True, **data)
    shop_id = create_document(db, "shop", shop)
    logger.info("shop_created", shop_id=shop_id, owner_id=user["id"])
    return get_shop(db, shop_id)


def update_shop(db: Database, shop_id: str, user: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    shop = ensure_shop_owner(db, shop_id, user)
    if changes:
        new_name = changes.get("name")
        if new_name and new_name != shop.get("name") and db["shop"].find_one(
            {"owner_id": user["id"], "name": new_name, "_id": {"$ne": shop["_id"]}}
        ):
            raise ConflictError("You already have a shop with this name")
        db["shop"].update_one({"_id": shop["_id"]}, {"$set": {**changes, "updated_at": utcnow()}})
    return get_shop(db, shop_id)


def delete_shop(db: Database, shop_id: str, user: Dict[str, Any]) -> None:
    shop = ensure_shop_owner(db, shop_id, user, action="delete this shop")
    db["shop"].delete_one({"_id": shop["_id"]})
    removed = db["product"].delete_many({"shop_id": str(shop["_id"])}).deleted_count
    logger.info("shop_deleted", shop_id=shop_id, products_removed=removed)


# ----------------------- Products -----------------------

def search_products(
    db: Database,
    shop_id: Optional[str] = None,
    category: Optional[str] = None,
    is_available: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = RESULT_LIMIT,
) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if shop_id:
        filt["shop_id"] = shop_id
    if category:
        filt["category"] = category
    if is_available is not None:
        filt["is_available"] = is_available
    if search:
        filt.update(_text_search(search))
    docs = get_documents(db, "product", filt, sort=[("created_at", DESCENDING)], limit=limit)
    return [serialize_doc(d) for d in docs]


def get_product(db: Database, product_id: str) -> Dict[str, Any]:
    product = find_by_id(db, "product", product_id)
    if not product:
        raise NotFoundError("Product not found")
    return serialize_doc(product)


def create_product(db: Database, user: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
    ensure_shop_owner(db, data["shop_id"], user, action="add products to this shop")
    product = Product(**data)
    product_id = create_document(db, "product", product)
    logger.info("product_created", product_id=product_id, shop_id=data["shop_id"])
    return get_product(db, product_id)


def update_product(db: Database, product_id: str, user: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    product = ensure_product_owner(db, product_id, user)
    if changes:
        db["product"].update_one({"_id": product["_id"]}, {"$set": {**changes, "updated_at": utcnow()}})
    return get_product(db, product_id)


def delete_product(db: Database, product_id: str, user: Dict[str, Any]) -> None:
    product = ensure_product_owner(db, product_id, user, action="delete this product")
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("product_deleted", product_id=product_id)
