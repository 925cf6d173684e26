import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import get_settings
from database import create_document, find_by_id, get_db, utcnow
from errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentials,
    ValidationError,
)
from schemas import OTP, User

logger = structlog.get_logger(__name__)

MOBILE_RE = re.compile(r"^[0-9]{10}$")
MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)
security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_token(user_id: str) -> str:
    settings = get_settings()
    exp = datetime.now(timezone.utc) + timedelta(days=settings.TOKEN_EXPIRE_DAYS)
    return jwt.encode({"id": user_id, "exp": exp}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid or expired token")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("No token provided")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise AuthenticationError("Invalid token payload")
    user = find_by_id(db, "user", user_id)
    if not user:
        raise AuthenticationError("Invalid token - user not found")
    user["id"] = str(user["_id"])
    return user


def user_to_client(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user.get("id") or user.get("_id")),
        "mobile": user.get("mobile"),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role"),
        "isVerified": user.get("is_verified", False),
    }


def validate_mobile(mobile: Optional[str]) -> str:
    if not mobile or not MOBILE_RE.match(mobile):
        raise ValidationError("Please provide a valid 10-digit mobile number")
    return mobile


def validate_new_password(password: Optional[str], message: str = "Password must be at least 6 characters long") -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(message)
    return password


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def send_otp(db: Database, mobile: str) -> str:
    """Issue a fresh 6-digit code for ``mobile``.

    Any earlier unconsumed code is deleted first, so the most recent request
    always wins.
    """
    settings = get_settings()
    validate_mobile(mobile)
    code = generate_otp()
    db["otp"].delete_many({"mobile": mobile})
    otp = OTP(mobile=mobile, otp=code, expires_at=utcnow() + timedelta(minutes=settings.OTP_TTL_MINUTES))
    create_document(db, "otp", otp)
    if settings.is_production:
        logger.info("otp_issued", mobile=mobile)
    else:
        logger.info("otp_issued", mobile=mobile, otp=code)
    return code


def _consume_otp(db: Database, mobile: str, code: str) -> None:
    settings = get_settings()
    now = utcnow()
    record = db["otp"].find_one(
        {
            "mobile": mobile,
            "otp": code,
            "expires_at": {"$gt": now},
            "attempts": {"$lt": settings.OTP_MAX_ATTEMPTS},
        }
    )
    # a code may only be spent once, even by concurrent requests
    if record and db["otp"].delete_one({"_id": record["_id"]}).deleted_count == 1:
        return
    db["otp"].update_one({"mobile": mobile, "expires_at": {"$gt": now}}, {"$inc": {"attempts": 1}})
    logger.info("otp_rejected", mobile=mobile)
    raise ValidationError("Invalid or expired OTP")


def verify_otp(db: Database, mobile: str, code: Optional[str], name: Optional[str] = None, role: Optional[str] = None) -> Dict[str, Any]:
    validate_mobile(mobile)
    if not code or len(code) != 6:
        raise ValidationError("Please provide a valid 6-digit OTP")
    _consume_otp(db, mobile, code)

    user = db["user"].find_one({"mobile": mobile})
    if not user:
        new_user = User(mobile=mobile, name=name or None, role=role or "buyer", is_verified=True)
        try:
            create_document(db, "user", new_user)
            logger.info("user_registered", mobile=mobile, via="otp")
        except DuplicateKeyError:
            pass
        user = db["user"].find_one({"mobile": mobile})
    else:
        update: Dict[str, Any] = {"is_verified": True, "updated_at": utcnow()}
        if name and not user.get("name"):
            update["name"] = name
        db["user"].update_one({"_id": user["_id"]}, {"$set": update})
        user = db["user"].find_one({"_id": user["_id"]})
    return user


def signup(
    db: Database,
    mobile: str,
    password: Optional[str],
    name: Optional[str] = None,
    email: Optional[str] = None,
    role: Optional[str] = None,
) -> Dict[str, Any]:
    validate_mobile(mobile)
    validate_new_password(password)
    if db["user"].find_one({"mobile": mobile}):
        raise ConflictError("User with this mobile number already exists")
    user = User(
        mobile=mobile,
        password_hash=hash_password(password),
        name=name or None,
        email=email or None,
        role=role or "buyer",
        is_verified=True,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ConflictError("User with this mobile number already exists")
    logger.info("user_registered", user_id=user_id, via="password")
    return find_by_id(db, "user", user_id)


def login(db: Database, mobile: str, password: Optional[str]) -> Dict[str, Any]:
    validate_mobile(mobile)
    if not password:
        raise ValidationError("Please provide a password")
    user = db["user"].find_one({"mobile": mobile})
    if not user:
        raise InvalidCredentials()
    if not user.get("password_hash"):
        raise InvalidCredentials("Please use OTP login for this account")
    if not verify_password(password, user["password_hash"]):
        raise InvalidCredentials()
    logger.info("user_logged_in", user_id=str(user["_id"]))
    return user


def change_password(db: Database, user: Dict[str, Any], current_password: Optional[str], new_password: Optional[str]) -> None:
    if not current_password or not new_password:
        raise ValidationError("Please provide both current and new password")
    validate_new_password(new_password, "New password must be at least 6 characters long")
    if not user.get("password_hash"):
        raise ValidationError("This account uses OTP login. Please set a password first.")
    if not verify_password(current_password, user["password_hash"]):
        raise AuthenticationError("Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": utcnow()}},
    )
    logger.info("password_changed", user_id=str(user["_id"]))
