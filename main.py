from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from pymongo.database import Database
from pymongo.errors import PyMongoError

import auth
import cart
import catalog
import orders
from config import configure_logging, get_settings
from database import ensure_indexes, find_by_id, get_db, serialize_doc, utcnow
from errors import NotFoundError, register_exception_handlers
from schemas import Coordinates, Role

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    db_provider = app.dependency_overrides.get(get_db, get_db)
    # keep serving when the database is down; /api/health reports it
    try:
        ensure_indexes(db_provider())
    except PyMongoError as e:
        logger.error("indexes_skipped", error=str(e)[:200])
    logger.info("api_started", environment=get_settings().ENVIRONMENT)
    yield


app = FastAPI(title="QueueLess Kirana API", version="2.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

api = APIRouter(prefix="/api")


# ----------------------- Models -----------------------
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendOtpBody(ApiModel):
    mobile: str
    role: Optional[Role] = None


class VerifyOtpBody(ApiModel):
    mobile: str
    otp: str
    name: Optional[str] = None
    role: Optional[Role] = None


class SignupBody(ApiModel):
    mobile: str
    password: str
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, v):
        return v or None


class LoginBody(ApiModel):
    mobile: str
    password: str


class ProfileUpdateBody(ApiModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, v):
        return v or None


class PasswordUpdateBody(ApiModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class ShopCreateBody(ApiModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str = Field(..., min_length=1)
    image: Optional[str] = None
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)
    coordinates: Optional[Coordinates] = None
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None


class ShopUpdateBody(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    is_open: Optional[bool] = None


class ProductCreateBody(ApiModel):
    shop_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    unit: str = Field(..., min_length=1)
    image: Optional[str] = None
    is_available: bool = True
    stock: int = Field(0, ge=0)


class ProductUpdateBody(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = None
    image: Optional[str] = None
    is_available: Optional[bool] = None
    stock: Optional[int] = Field(None, ge=0)


class CartProductRef(ApiModel):
    id: str


class CartAddBody(ApiModel):
    product: CartProductRef
    shop_id: str
    shop_name: str
    quantity: int = 1


class CartUpdateBody(ApiModel):
    product_id: str
    quantity: int


class OrderItemBody(ApiModel):
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[int] = None


class OrderCreateBody(ApiModel):
    shop_id: Optional[str] = None
    items: Optional[List[OrderItemBody]] = None
    total_amount: Optional[float] = None
    payment_method: Optional[str] = None
    delivery_address: Optional[str] = None
    notes: Optional[str] = None


class OrderStatusBody(ApiModel):
    status: Optional[str] = None


def _changes(body: BaseModel) -> Dict[str, Any]:
    # null never overwrites a stored field
    return body.model_dump(exclude_none=True)


# ----------------------- Health -----------------------
@api.get("")
def root():
    return {
        "status": "ok",
        "message": "QueueLess Kirana API is running",
        "version": app.version,
        "endpoints": {
            "auth": "/api/auth",
            "shops": "/api/shops",
            "products": "/api/products",
            "orders": "/api/orders",
            "cart": "/api/cart",
            "users": "/api/users",
            "health": "/api/health",
        },
    }


@api.get("/health")
def health(db: Database = Depends(get_db)):
    response = {"status": "ok", "message": "QueueLess Kirana API is running", "database": "disconnected"}
    try:
        db.command("ping")
        response["database"] = "connected"
    except Exception as e:
        logger.warning("database_ping_failed", error=str(e)[:80])
    return response


# ----------------------- Auth -----------------------
@api.post("/auth/send-otp")
def send_otp(body: SendOtpBody, db: Database = Depends(get_db)):
    code = auth.send_otp(db, body.mobile)
    response = {"success": True, "message": "OTP sent successfully"}
    if not get_settings().is_production:
        response["otp"] = code
    return response


@api.post("/auth/verify-otp")
def verify_otp(body: VerifyOtpBody, db: Database = Depends(get_db)):
    user = auth.verify_otp(db, body.mobile, body.otp, name=body.name, role=body.role)
    return {
        "success": True,
        "message": "OTP verified successfully",
        "token": auth.create_token(str(user["_id"])),
        "user": auth.user_to_client(user),
    }


@api.post("/auth/signup", status_code=201)
def signup(body: SignupBody, db: Database = Depends(get_db)):
    user = auth.signup(db, body.mobile, body.password, name=body.name, email=body.email, role=body.role)
    return {
        "success": True,
        "message": "User registered successfully",
        "token": auth.create_token(str(user["_id"])),
        "user": auth.user_to_client(user),
    }


@api.post("/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    user = auth.login(db, body.mobile, body.password)
    return {
        "success": True,
        "message": "Login successful",
        "token": auth.create_token(str(user["_id"])),
        "user": auth.user_to_client(user),
    }


@api.get("/auth/me")
def me(user=Depends(auth.get_current_user)):
    return {"success": True, "user": auth.user_to_client(user)}


# ----------------------- Users -----------------------
@api.get("/users/profile")
def get_profile(user=Depends(auth.get_current_user)):
    profile = auth.user_to_client(user)
    profile["createdAt"] = serialize_doc(user).get("created_at")
    return {"success": True, "user": profile}


@api.put("/users/profile")
def update_profile(body: ProfileUpdateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    # name and email are optional, so an explicit null clears them
    changes = body.model_dump(exclude_unset=True)
    if changes:
        db["user"].update_one({"_id": user["_id"]}, {"$set": {**changes, "updated_at": utcnow()}})
    updated = db["user"].find_one({"_id": user["_id"]})
    return {"success": True, "message": "Profile updated successfully", "user": auth.user_to_client(updated)}


@api.put("/users/password")
def update_password(body: PasswordUpdateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    auth.change_password(db, user, body.current_password, body.new_password)
    return {"success": True, "message": "Password updated successfully"}


@api.get("/users/{user_id}")
def get_public_user(user_id: str, db: Database = Depends(get_db)):
    user = find_by_id(db, "user", user_id)
    if not user:
        raise NotFoundError("User not found")
    return {"success": True, "user": {"id": str(user["_id"]), "name": user.get("name"), "role": user.get("role")}}


# ----------------------- Shops -----------------------
@api.get("/shops")
def list_shops(
    category: Optional[str] = None,
    city: Optional[str] = None,
    is_open: Optional[bool] = Query(None, alias="isOpen"),
    search: Optional[str] = None,
    db: Database = Depends(get_db),
):
    shops = catalog.search_shops(db, category=category, city=city, is_open=is_open, search=search)
    return {"success": True, "shops": shops}


@api.post("/shops", status_code=201)
def create_shop(body: ShopCreateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    shop = catalog.create_shop(db, user, body.model_dump())
    return {"success": True, "message": "Shop created successfully", "shop": shop}


@api.get("/shops/owner/my-shops")
def my_shops(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "shops": catalog.list_owner_shops(db, user["id"])}


@api.get("/shops/{shop_id}")
def get_shop(shop_id: str, db: Database = Depends(get_db)):
    return {"success": True, "shop": catalog.get_shop(db, shop_id)}


@api.put("/shops/{shop_id}")
def update_shop(shop_id: str, body: ShopUpdateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    shop = catalog.update_shop(db, shop_id, user, _changes(body))
    return {"success": True, "message": "Shop updated successfully", "shop": shop}


@api.delete("/shops/{shop_id}")
def delete_shop(shop_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    catalog.delete_shop(db, shop_id, user)
    return {"success": True, "message": "Shop deleted successfully"}


# ----------------------- Products -----------------------
@api.get("/products")
def list_products(
    category: Optional[str] = None,
    is_available: Optional[bool] = Query(None, alias="isAvailable"),
    search: Optional[str] = None,
    db: Database = Depends(get_db),
):
    products = catalog.search_products(db, category=category, is_available=is_available, search=search)
    return {"success": True, "products": products}


@api.post("/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    product = catalog.create_product(db, user, body.model_dump())
    return {"success": True, "message": "Product created successfully", "product": product}


@api.get("/products/shop/{shop_id}")
def list_shop_products(
    shop_id: str,
    category: Optional[str] = None,
    is_available: Optional[bool] = Query(None, alias="isAvailable"),
    search: Optional[str] = None,
    db: Database = Depends(get_db),
):
    products = catalog.search_products(
        db, shop_id=shop_id, category=category, is_available=is_available, search=search, limit=0
    )
    return {"success": True, "products": products}


@api.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return {"success": True, "product": catalog.get_product(db, product_id)}


@api.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    product = catalog.update_product(db, product_id, user, _changes(body))
    return {"success": True, "message": "Product updated successfully", "product": product}


@api.delete("/products/{product_id}")
def delete_product(product_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    catalog.delete_product(db, product_id, user)
    return {"success": True, "message": "Product deleted successfully"}


# ----------------------- Cart -----------------------
@api.get("/cart")
def get_cart(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return {"success": True, **cart.get_cart(db, user["id"])}


@api.post("/cart/add")
def add_to_cart(body: CartAddBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    view = cart.add_item(db, user["id"], body.product.id, body.shop_id, body.shop_name, body.quantity)
    return {"success": True, "message": "Item added to cart", **view}


@api.put("/cart/update")
def update_cart(body: CartUpdateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    view = cart.update_quantity(db, user["id"], body.product_id, body.quantity)
    return {"success": True, "message": "Cart updated", **view}


@api.delete("/cart/remove/{product_id}")
def remove_from_cart(product_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    view = cart.remove_item(db, user["id"], product_id)
    return {"success": True, "message": "Item removed from cart", **view}


@api.delete("/cart/clear")
def clear_cart(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    view = cart.clear_cart(db, user["id"])
    return {"success": True, "message": "Cart cleared", **view}


# ----------------------- Orders -----------------------
@api.post("/orders", status_code=201)
def create_order(body: OrderCreateBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    items = None if body.items is None else [i.model_dump() for i in body.items]
    order = orders.create_order(
        db,
        user["id"],
        body.shop_id,
        items,
        body.total_amount,
        body.payment_method,
        delivery_address=body.delivery_address,
        notes=body.notes,
    )
    return {"success": True, "message": "Order created successfully", "order": order}


@api.get("/orders/my-orders")
def my_orders(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "orders": orders.list_my_orders(db, user["id"])}


@api.get("/orders/shop-orders")
def shop_orders(
    shop_id: Optional[str] = Query(None, alias="shopId"),
    status: Optional[str] = None,
    user=Depends(auth.get_current_user),
    db: Database = Depends(get_db),
):
    return {"success": True, "orders": orders.list_shop_orders(db, shop_id, user["id"], status=status)}


@api.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return {"success": True, "order": orders.get_order(db, order_id, user["id"])}


@api.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusBody, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    order = orders.update_status(db, order_id, body.status, user["id"])
    return {"success": True, "message": "Order status updated successfully", "order": order}


@api.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    order = orders.cancel_order(db, order_id, user["id"])
    return {"success": True, "message": "Order cancelled successfully", "order": order}


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
