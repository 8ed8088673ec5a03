import logging
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import cart
import catalog
import config
import database
import orders
import reviews
from errors import NotFoundError
from responses import error_response, success_response
from schemas import (
    AddToCartRequest,
    LoginRequest,
    MenuItemCreate,
    MenuItemUpdate,
    RegisterRequest,
    RejectOrderRequest,
    ReviewCreate,
    Role,
    StallCreate,
    StallUpdate,
    UpdateAddressRequest,
    UpdateCartItemRequest,
    UpdateProfileRequest,
)
from storage import ImageFile, get_object_store

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# App init
app = FastAPI(title="Food Court API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

require_user = auth.require_roles(Role.USER)
require_stall_owner = auth.require_roles(Role.STALL_OWNER)
require_admin = auth.require_roles(Role.ADMIN)


# Error handlers
def _format_errors(errors, skip_source: bool) -> List[str]:
    messages = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ())]
        if skip_source and loc:
            loc = loc[1:]
        field = ".".join(loc)
        messages.append(f"{field}: {error.get('msg')}" if field else error.get("msg"))
    return messages


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), getattr(exc, "errors", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "Validation failed", _format_errors(exc.errors(), skip_source=True))


@app.exception_handler(PydanticValidationError)
async def model_validation_handler(request: Request, exc: PydanticValidationError):
    return error_response(400, "Validation failed", _format_errors(exc.errors(), skip_source=False))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# Routes
@app.get("/")
def root():
    return {"message": "Food Court API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


@app.get("/api/files/{path:path}")
def get_file(path: str, store=Depends(get_object_store)):
    stored = store.open(path)
    if stored is None:
        raise NotFoundError("File not found")
    content_type = (stored.metadata or {}).get("content_type", "application/octet-stream")
    return Response(content=stored.read(), media_type=content_type)


# Auth
@app.post("/api/auth/register")
def register(req: RegisterRequest):
    return success_response(201, "Registration successful", auth.register(req))


@app.post("/api/auth/register-admin")
def register_admin(req: RegisterRequest, caller=Depends(auth.get_optional_user)):
    return success_response(201, "Admin registered", auth.register_admin(req, caller))


@app.post("/api/auth/register-stall-owner")
def register_stall_owner(
    username: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    stall_name: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    food_types: str = Form(...),
    stall_image: Optional[UploadFile] = File(None),
    qris_image: Optional[UploadFile] = File(None),
    admin=Depends(require_admin),
    store=Depends(get_object_store),
):
    account = RegisterRequest(username=username, email=email, password=password, confirm_password=confirm_password)
    stall = StallCreate(name=stall_name, description=description, category=category, food_types=food_types)
    data = auth.register_stall_owner(
        account, stall, ImageFile.from_upload(stall_image), ImageFile.from_upload(qris_image), store
    )
    return success_response(201, "Stall owner registered", data)


@app.post("/api/auth/login")
def login(req: LoginRequest):
    return success_response(200, "Login successful", auth.login(req))


@app.post("/api/auth/logout")
def logout(user=Depends(auth.get_current_user)):
    auth.logout(user["uid"])
    return success_response(200, "Logged out")


@app.get("/api/auth/me")
def me(user=Depends(auth.get_current_user)):
    return success_response(200, "Profile retrieved", auth.get_profile(user["uid"]))


@app.patch("/api/auth/me/address")
def update_address(req: UpdateAddressRequest, user=Depends(auth.get_current_user)):
    return success_response(200, "Address updated", auth.update_address(user["uid"], req))


@app.patch("/api/auth/me/profile")
def update_profile(
    username: Optional[str] = Form(None),
    old_password: Optional[str] = Form(None),
    new_password: Optional[str] = Form(None),
    photo: Optional[UploadFile] = File(None),
    user=Depends(auth.get_current_user),
    store=Depends(get_object_store),
):
    req = UpdateProfileRequest(username=username or None, old_password=old_password, new_password=new_password or None)
    data = auth.update_profile(user["uid"], req, ImageFile.from_upload(photo), store)
    return success_response(200, "Profile updated", data)


# Stalls
@app.get("/api/stalls")
def list_stalls(
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_rating: Optional[float] = Query(None, ge=0, le=5),
    food_types: Optional[str] = None,
    sort_by: str = Query("created_at", pattern="^(name|rating|created_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    types = [t.strip() for t in food_types.split(",") if t.strip()] if food_types else None
    data, meta = catalog.list_stalls(search, category, min_rating, types, sort_by, sort_order, page, limit)
    return success_response(200, "Stalls retrieved", data, meta)


@app.get("/api/stalls/my-stall")
def get_my_stall(user=Depends(require_stall_owner)):
    stall_id = auth.require_stall_id(user)
    return success_response(200, "Stall retrieved", catalog.get_stall(stall_id))


@app.patch("/api/stalls/my-stall")
def update_my_stall(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    food_types: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    qris_image: Optional[UploadFile] = File(None),
    user=Depends(require_stall_owner),
    store=Depends(get_object_store),
):
    stall_id = auth.require_stall_id(user)
    req = StallUpdate(name=name, description=description, category=category, food_types=food_types)
    data = catalog.update_stall(stall_id, req, ImageFile.from_upload(image), ImageFile.from_upload(qris_image), store)
    return success_response(200, "Stall updated", data)


@app.delete("/api/stalls/my-stall")
def delete_my_stall(user=Depends(require_stall_owner), store=Depends(get_object_store)):
    catalog.delete_stall(auth.require_stall_id(user), store)
    return success_response(200, "Stall deleted")


@app.get("/api/stalls/my-stall/menu-items")
def list_my_menu_items(user=Depends(require_stall_owner)):
    stall_id = auth.require_stall_id(user)
    return success_response(200, "Menu items retrieved", catalog.list_menu_items(stall_id))


@app.post("/api/stalls/my-stall/menu-items")
def create_menu_item(
    name: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    price: int = Form(...),
    is_available: bool = Form(True),
    image: Optional[UploadFile] = File(None),
    user=Depends(require_stall_owner),
    store=Depends(get_object_store),
):
    stall_id = auth.require_stall_id(user)
    req = MenuItemCreate(name=name, description=description, category=category, price=price, is_available=is_available)
    data = catalog.create_menu_item(stall_id, req, ImageFile.from_upload(image), store)
    return success_response(201, "Menu item created", data)


@app.get("/api/stalls/my-stall/menu-items/{menu_item_id}")
def get_my_menu_item(menu_item_id: str, user=Depends(require_stall_owner)):
    stall_id = auth.require_stall_id(user)
    return success_response(200, "Menu item retrieved", catalog.get_stall_menu_item(stall_id, menu_item_id))


@app.patch("/api/stalls/my-stall/menu-items/{menu_item_id}")
def update_menu_item(
    menu_item_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    price: Optional[int] = Form(None),
    is_available: Optional[bool] = Form(None),
    image: Optional[UploadFile] = File(None),
    user=Depends(require_stall_owner),
    store=Depends(get_object_store),
):
    stall_id = auth.require_stall_id(user)
    req = MenuItemUpdate(name=name, description=description, category=category, price=price, is_available=is_available)
    data = catalog.update_menu_item(stall_id, menu_item_id, req, ImageFile.from_upload(image), store)
    return success_response(200, "Menu item updated", data)


@app.delete("/api/stalls/my-stall/menu-items/{menu_item_id}")
def delete_menu_item(menu_item_id: str, user=Depends(require_stall_owner), store=Depends(get_object_store)):
    catalog.delete_menu_item(auth.require_stall_id(user), menu_item_id, store)
    return success_response(200, "Menu item deleted")


@app.post("/api/stalls")
def admin_create_stall(
    owner_id: str = Form(...),
    name: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    food_types: str = Form(...),
    image: Optional[UploadFile] = File(None),
    qris_image: Optional[UploadFile] = File(None),
    admin=Depends(require_admin),
    store=Depends(get_object_store),
):
    req = StallCreate(name=name, description=description, category=category, food_types=food_types)
    data = catalog.create_stall(owner_id, req, ImageFile.from_upload(image), ImageFile.from_upload(qris_image), store)
    return success_response(201, "Stall created", data)


@app.get("/api/stalls/{stall_id}")
def get_stall(stall_id: str):
    return success_response(200, "Stall retrieved", catalog.get_stall_detail(stall_id))


@app.patch("/api/stalls/{stall_id}")
def admin_update_stall(
    stall_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    food_types: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    qris_image: Optional[UploadFile] = File(None),
    admin=Depends(require_admin),
    store=Depends(get_object_store),
):
    req = StallUpdate(name=name, description=description, category=category, food_types=food_types)
    data = catalog.update_stall(stall_id, req, ImageFile.from_upload(image), ImageFile.from_upload(qris_image), store)
    return success_response(200, "Stall updated", data)


@app.delete("/api/stalls/{stall_id}")
def admin_delete_stall(stall_id: str, admin=Depends(require_admin), store=Depends(get_object_store)):
    catalog.delete_stall(stall_id, store)
    return success_response(200, "Stall deleted")


# Cart
@app.get("/api/cart")
def get_cart(user=Depends(require_user)):
    data = cart.get_cart(user["uid"])
    return success_response(200, "Cart retrieved" if data else "Cart is empty", data)


@app.post("/api/cart/items")
def add_to_cart(req: AddToCartRequest, user=Depends(require_user)):
    data = cart.add_to_cart(user["uid"], req.menu_item_id, req.quantity)
    return success_response(200, "Item added to cart", data)


@app.patch("/api/cart/items/{menu_item_id}")
def update_cart_item(menu_item_id: str, req: UpdateCartItemRequest, user=Depends(require_user)):
    data = cart.update_item_quantity(user["uid"], menu_item_id, req.quantity)
    return success_response(200, "Cart updated", data)


@app.delete("/api/cart/items/{menu_item_id}")
def remove_cart_item(menu_item_id: str, user=Depends(require_user)):
    data = cart.remove_item(user["uid"], menu_item_id)
    return success_response(200, "Item removed from cart", data)


@app.delete("/api/cart")
def clear_cart(user=Depends(require_user)):
    cart.clear_cart(user["uid"])
    return success_response(200, "Cart cleared")


# Orders (stall owner)
@app.get("/api/orders/my-stall/orders")
def list_stall_orders(
    status: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_stall_owner),
):
    stall_id = auth.require_stall_id(user)
    data, meta = orders.list_stall_orders(stall_id, status, start_date, end_date, page, limit)
    return success_response(200, "Orders retrieved", data, meta)


@app.get("/api/orders/my-stall/orders/{order_id}")
def get_stall_order(order_id: str, user=Depends(require_stall_owner)):
    stall_id = auth.require_stall_id(user)
    return success_response(200, "Order retrieved", orders.get_stall_order(stall_id, order_id))


@app.patch("/api/orders/my-stall/orders/{order_id}/confirm")
def confirm_order(order_id: str, user=Depends(require_stall_owner)):
    data = orders.confirm_order(auth.require_stall_id(user), order_id)
    return success_response(200, "Order confirmed", data)


@app.patch("/api/orders/my-stall/orders/{order_id}/reject")
def reject_order(order_id: str, req: RejectOrderRequest, user=Depends(require_stall_owner)):
    data = orders.reject_order(auth.require_stall_id(user), order_id, req.reason)
    return success_response(200, "Order rejected", data)


@app.patch("/api/orders/my-stall/orders/{order_id}/ready")
def mark_order_ready(order_id: str, user=Depends(require_stall_owner)):
    data = orders.mark_ready(auth.require_stall_id(user), order_id)
    return success_response(200, "Order is ready", data)


@app.patch("/api/orders/my-stall/orders/{order_id}/complete")
def complete_order(order_id: str, user=Depends(require_stall_owner)):
    data = orders.complete_order(auth.require_stall_id(user), order_id)
    return success_response(200, "Order completed", data)


# Orders (buyer)
@app.post("/api/orders/checkout")
def checkout(
    delivery_method: Optional[str] = Form(None),
    proof: Optional[UploadFile] = File(None),
    user=Depends(require_user),
    store=Depends(get_object_store),
):
    data = orders.checkout(user["uid"], ImageFile.from_upload(proof), delivery_method, store)
    return success_response(201, "Order placed", data)


@app.get("/api/orders")
def list_orders(
    status: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_user),
):
    data, meta = orders.list_user_orders(user["uid"], status, start_date, end_date, page, limit)
    return success_response(200, "Orders retrieved", data, meta)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(require_user)):
    return success_response(200, "Order retrieved", orders.get_user_order(user["uid"], order_id))


@app.patch("/api/orders/{order_id}/upload-proof")
def upload_proof(
    order_id: str,
    proof: Optional[UploadFile] = File(None),
    user=Depends(require_user),
    store=Depends(get_object_store),
):
    data = orders.resubmit_proof(user["uid"], order_id, ImageFile.from_upload(proof), store)
    return success_response(200, "Payment proof uploaded", data)


# Reviews
@app.post("/api/orders/{order_id}/review")
def create_review(
    order_id: str,
    rating: int = Form(...),
    comment: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    images: Optional[List[UploadFile]] = File(None),
    user=Depends(require_user),
    store=Depends(get_object_store),
):
    req = ReviewCreate(rating=rating, comment=comment, tags=tags)
    files = [f for f in (ImageFile.from_upload(upload) for upload in images or []) if f is not None]
    data = reviews.create_review(user, order_id, req, files, store)
    return success_response(201, "Review created", data)


@app.get("/api/reviews/my-reviews")
def list_my_reviews(
    rating: Optional[int] = Query(None, ge=1, le=5),
    sort_by: str = Query("created_at", pattern="^(created_at|rating)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_user),
):
    data, meta = reviews.list_my_reviews(user["uid"], rating, sort_by, sort_order, page, limit)
    return success_response(200, "Reviews retrieved", data, meta)


@app.get("/api/reviews/my-stall/reviews")
def list_my_stall_reviews(
    rating: Optional[int] = Query(None, ge=1, le=5),
    sort_by: str = Query("created_at", pattern="^(created_at|rating)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(require_stall_owner),
):
    stall_id = auth.require_stall_id(user)
    data, meta = reviews.list_stall_reviews(stall_id, rating, sort_by, sort_order, page, limit)
    return success_response(200, "Reviews retrieved", data, meta)


@app.get("/api/reviews/stall/{stall_id}")
def list_stall_reviews(
    stall_id: str,
    rating: Optional[int] = Query(None, ge=1, le=5),
    sort_by: str = Query("created_at", pattern="^(created_at|rating)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    data, meta = reviews.list_stall_reviews(stall_id, rating, sort_by, sort_order, page, limit)
    return success_response(200, "Reviews retrieved", data, meta)


@app.on_event("startup")
def create_indexes():
    if database.db is None:
        logger.warning("Database not configured, skipping index creation")
        return
    try:
        database.ensure_indexes()
    except Exception:
        logger.exception("Could not create database indexes")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
