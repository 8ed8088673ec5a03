"""
Authentication and accounts.

Passwords are bcrypt hashes (passlib), bearer tokens are HS256 JWTs
(python-jose). A token carries the user's `token_version`; logging out bumps
the version, which revokes every token issued before. Role and stall id are
looked up from the database on every request rather than stored in the
token.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

import catalog
import config
from database import collection, create_document, delete_document, get_document, set_document, update_document, utc_now
from errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError
from schemas import (
    LoginRequest,
    RegisterRequest,
    Role,
    StallCreate,
    UpdateAddressRequest,
    UpdateProfileRequest,
    User,
    UserProfile,
)
from storage import ImageFile, delete_image_quietly, upload_image, validate_image

logger = logging.getLogger(__name__)

USERS = "users"
USER_PROFILES = "user_profiles"
PROFILE_PICTURES_PATH = "profile-pictures"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)

INVALID_CREDENTIALS = "Invalid email/username or password"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


# Tokens
def create_token(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "ver": user.get("token_version", 0),
        "iat": now,
        "exp": now + timedelta(days=config.JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def verify_token(token: str) -> Dict[str, Any]:
    """Decode a bearer token into {uid, email, ver}."""
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
    except ExpiredSignatureError:
        raise UnauthorizedError("Token has expired")
    except JWTError:
        raise UnauthorizedError("Invalid token")
    uid = payload.get("sub")
    if not uid:
        raise UnauthorizedError("Invalid token")
    return {"uid": uid, "email": payload.get("email"), "ver": payload.get("ver", 0)}


def _find_owned_stall_id(uid: str) -> Optional[str]:
    stall = collection("stalls").find_one({"owner_id": uid}, sort=[("created_at", 1)])
    return str(stall["_id"]) if stall else None


def _request_user(user: dict) -> Dict[str, Any]:
    request_user = {
        "uid": str(user["_id"]),
        "email": user.get("email"),
        "username": user.get("username"),
        "role": user.get("role", Role.USER.value),
        "stall_id": None,
    }
    if request_user["role"] == Role.STALL_OWNER.value:
        request_user["stall_id"] = _find_owned_stall_id(request_user["uid"])
    return request_user


def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise UnauthorizedError("Invalid Authorization header")
    claims = verify_token(token.strip())
    user = get_document(USERS, claims["uid"])
    if not user:
        raise UnauthorizedError("Invalid token user")
    if user.get("token_version", 0) != claims["ver"]:
        raise UnauthorizedError("Token has been revoked")
    return _request_user(user)


def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    return get_current_user(authorization)


def require_roles(*roles: Role):
    allowed = {r.value for r in roles}

    def dependency(user=Depends(get_current_user)):
        if user["role"] not in allowed:
            raise ForbiddenError("You do not have access to this endpoint")
        return user

    return dependency


def require_stall_id(user: Dict[str, Any]) -> str:
    if not user.get("stall_id"):
        raise NotFoundError("You do not own a stall yet")
    return user["stall_id"]


# Accounts
def public_user(user: dict) -> Dict[str, Any]:
    return {
        "uid": str(user["_id"]),
        "username": user["username"],
        "email": user["email"],
        "role": user.get("role", Role.USER.value),
    }


def _ensure_unique(username: str, email: str):
    if collection(USERS).find_one({"username": username}):
        raise ConflictError("Username is already taken")
    if collection(USERS).find_one({"email": email}):
        raise ConflictError("Email is already registered")


def _create_user(payload: RegisterRequest, role: Role) -> dict:
    username = payload.username.lower()
    email = str(payload.email).lower()
    _ensure_unique(username, email)
    user = User(
        username=username,
        email=email,
        password_hash=hash_password(payload.password),
        role=role,
    )
    try:
        user_id = create_document(USERS, user)
    except DuplicateKeyError:
        raise ConflictError("Username or email is already registered")
    logger.info("Registered %s account %s", role.value, user_id)
    return get_document(USERS, user_id)


def register(payload: RegisterRequest) -> Dict[str, Any]:
    return public_user(_create_user(payload, Role.USER))


def register_admin(payload: RegisterRequest, caller: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Admins register admins; the very first admin may bootstrap without a token."""
    admin_exists = collection(USERS).find_one({"role": Role.ADMIN.value}) is not None
    if admin_exists and (caller is None or caller["role"] != Role.ADMIN.value):
        raise ForbiddenError("Only an admin can register another admin")
    return public_user(_create_user(payload, Role.ADMIN))


def register_stall_owner(
    payload: RegisterRequest,
    stall_payload: StallCreate,
    stall_image: Optional[ImageFile],
    qris_image: Optional[ImageFile],
    store,
) -> Dict[str, Any]:
    validate_image(stall_image)
    validate_image(qris_image, required=False)
    user = _create_user(payload, Role.STALL_OWNER)
    try:
        stall = catalog.create_stall(str(user["_id"]), stall_payload, stall_image, qris_image, store)
    except Exception:
        logger.error("Stall creation failed, removing new owner account %s", user["_id"])
        delete_document(USERS, str(user["_id"]))
        raise
    return {"user": public_user(user), "stall": stall}


def login(payload: LoginRequest) -> Dict[str, Any]:
    identifier = payload.identifier.lower()
    field = "email" if "@" in identifier else "username"
    user = collection(USERS).find_one({field: identifier})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise UnauthorizedError(INVALID_CREDENTIALS)
    return {"token": create_token(user), "user": public_user(user)}


def logout(uid: str) -> None:
    collection(USERS).update_one({"_id": uid}, {"$inc": {"token_version": 1}, "$set": {"updated_at": utc_now()}})
    logger.info("Revoked tokens for user %s", uid)


# Profile
def _load_user(uid: str) -> dict:
    user = get_document(USERS, uid)
    if not user:
        raise NotFoundError("User not found")
    return user


def get_profile(uid: str) -> Dict[str, Any]:
    user = _load_user(uid)
    profile = get_document(USER_PROFILES, uid) or {}
    data = public_user(user)
    data["photo_url"] = user.get("photo_url")
    data["address"] = {
        "address_name": profile.get("address_name"),
        "address_detail": profile.get("address_detail"),
    }
    return data


def update_address(uid: str, payload: UpdateAddressRequest) -> Dict[str, Any]:
    _load_user(uid)
    existing = get_document(USER_PROFILES, uid) or {}
    now = utc_now()
    profile = UserProfile(
        user_id=uid,
        address_name=payload.address_name or None,
        address_detail=payload.address_detail or None,
    )
    set_document(USER_PROFILES, uid, dict(profile.model_dump(), created_at=existing.get("created_at", now), updated_at=now))
    return get_profile(uid)


def update_profile(uid: str, payload: UpdateProfileRequest, photo: Optional[ImageFile], store) -> Dict[str, Any]:
    user = _load_user(uid)
    updates: Dict[str, Any] = {}

    if payload.username and payload.username.lower() != user["username"]:
        username = payload.username.lower()
        if collection(USERS).find_one({"username": username}):
            raise ConflictError("Username is already taken")
        updates["username"] = username

    if payload.new_password:
        if not verify_password(payload.old_password or "", user.get("password_hash", "")):
            raise UnauthorizedError("Old password is incorrect")
        updates["password_hash"] = hash_password(payload.new_password)

    if photo is not None:
        validate_image(photo)
        updates["photo_url"] = upload_image(store, PROFILE_PICTURES_PATH, uid, photo)

    if updates:
        try:
            update_document(USERS, uid, updates)
        except DuplicateKeyError:
            delete_image_quietly(store, updates.get("photo_url"))
            raise ConflictError("Username is already taken")
    if photo is not None:
        delete_image_quietly(store, user.get("photo_url"))
    return get_profile(uid)
