"""
Catalog: stalls and their menu items.

Images are uploaded to the object store before the document write; replaced
or orphaned images are removed best-effort.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from database import (
    collection,
    count_documents,
    create_document,
    delete_document,
    get_document,
    get_documents,
    new_id,
    query_documents,
    update_document,
)
from errors import ForbiddenError, NotFoundError
from responses import pagination_meta, serialize_doc
from schemas import MenuItem, MenuItemCreate, MenuItemUpdate, Stall, StallCreate, StallUpdate
from storage import ImageFile, delete_image_quietly, upload_image, validate_image

logger = logging.getLogger(__name__)

STALLS = "stalls"
MENU_ITEMS = "menu_items"
STALLS_PATH = "stalls"
MENU_ITEMS_PATH = "menu-items"

STALL_SORT_FIELDS = {"name": "name", "rating": "rating", "created_at": "created_at"}


# Views
def stall_view(doc: dict) -> Dict[str, Any]:
    data = serialize_doc(doc)
    data.setdefault("food_types", [])
    data.setdefault("total_reviews", 0)
    data.setdefault("qris_image_url", None)
    return data


def stall_list_view(doc: dict) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "name": doc["name"],
        "description": doc["description"],
        "stall_image_url": doc.get("stall_image_url"),
        "category": doc["category"],
        "food_types": doc.get("food_types", []),
        "rating": doc.get("rating", 0),
        "total_reviews": doc.get("total_reviews", 0),
    }


def menu_item_view(doc: dict) -> Dict[str, Any]:
    return serialize_doc(doc)


# Stalls
def get_stall_doc(stall_id: str) -> dict:
    doc = get_document(STALLS, stall_id)
    if not doc:
        raise NotFoundError("Stall not found")
    return doc


def create_stall(
    owner_id: str,
    payload: StallCreate,
    image: Optional[ImageFile],
    qris_image: Optional[ImageFile],
    store,
) -> Dict[str, Any]:
    validate_image(image)
    validate_image(qris_image, required=False)

    stall_id = new_id()
    stall_image_url = upload_image(store, STALLS_PATH, stall_id, image)
    qris_image_url = upload_image(store, STALLS_PATH, stall_id, qris_image) if qris_image else None

    stall = Stall(
        owner_id=owner_id,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        food_types=payload.food_types,
        stall_image_url=stall_image_url,
        qris_image_url=qris_image_url,
    )
    create_document(STALLS, stall, doc_id=stall_id)
    logger.info("Created stall %s for owner %s", stall_id, owner_id)
    return stall_view(get_document(STALLS, stall_id))


def list_stalls(
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_rating: Optional[float] = None,
    food_types: Optional[List[str]] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    filters: Dict[str, Any] = {}
    if category:
        filters["category"] = category
    if min_rating is not None:
        filters["rating"] = {"$gte": min_rating}
    if food_types:
        filters["food_types"] = {"$in": food_types}
    if search:
        filters["name"] = {"$regex": re.escape(search), "$options": "i"}

    direction = 1 if sort_order == "asc" else -1
    order_by = [(STALL_SORT_FIELDS.get(sort_by, "created_at"), direction), ("_id", direction)]

    total = count_documents(STALLS, filters)
    docs = query_documents(STALLS, filters, order_by, limit=limit, offset=(page - 1) * limit)
    return [stall_list_view(d) for d in docs], pagination_meta(total, page, limit)


def get_stall_detail(stall_id: str) -> Dict[str, Any]:
    doc = get_stall_doc(stall_id)
    data = stall_list_view(doc)
    data["qris_image_url"] = doc.get("qris_image_url")
    data["menu_items"] = list_menu_items(stall_id, only_available=True)
    return data


def get_stall(stall_id: str) -> Dict[str, Any]:
    return stall_view(get_stall_doc(stall_id))


def update_stall(
    stall_id: str,
    payload: StallUpdate,
    image: Optional[ImageFile],
    qris_image: Optional[ImageFile],
    store,
) -> Dict[str, Any]:
    current = get_stall_doc(stall_id)
    validate_image(image, required=False)
    validate_image(qris_image, required=False)

    updates = payload.model_dump(exclude_none=True)
    replaced = []
    if image is not None:
        updates["stall_image_url"] = upload_image(store, STALLS_PATH, stall_id, image)
        replaced.append(current.get("stall_image_url"))
    if qris_image is not None:
        updates["qris_image_url"] = upload_image(store, STALLS_PATH, stall_id, qris_image)
        replaced.append(current.get("qris_image_url"))

    if updates:
        update_document(STALLS, stall_id, updates)
    for url in replaced:
        delete_image_quietly(store, url)
    return get_stall(stall_id)


def delete_stall(stall_id: str, store) -> None:
    doc = get_stall_doc(stall_id)
    delete_document(STALLS, stall_id)
    delete_image_quietly(store, doc.get("stall_image_url"))
    delete_image_quietly(store, doc.get("qris_image_url"))
    remove_menu_items_for_stall(stall_id, store)
    logger.info("Deleted stall %s", stall_id)


def set_stall_rating(stall_id: str, rating: float, total_reviews: int) -> None:
    update_document(STALLS, stall_id, {"rating": rating, "total_reviews": total_reviews})


# Menu items
def _menu_item_doc(menu_item_id: str) -> dict:
    doc = get_document(MENU_ITEMS, menu_item_id)
    if not doc:
        raise NotFoundError("Menu item not found")
    return doc


def _owned_menu_item(stall_id: str, menu_item_id: str) -> dict:
    doc = _menu_item_doc(menu_item_id)
    if doc["stall_id"] != stall_id:
        raise ForbiddenError("This menu item belongs to another stall")
    return doc


def get_menu_item(menu_item_id: str) -> Dict[str, Any]:
    return menu_item_view(_menu_item_doc(menu_item_id))


def get_stall_menu_item(stall_id: str, menu_item_id: str) -> Dict[str, Any]:
    return menu_item_view(_owned_menu_item(stall_id, menu_item_id))


def list_menu_items(stall_id: str, only_available: bool = False) -> List[Dict[str, Any]]:
    filters: Dict[str, Any] = {"stall_id": stall_id}
    if only_available:
        filters["is_available"] = True
    docs = query_documents(MENU_ITEMS, filters, [("created_at", -1), ("_id", -1)])
    return [menu_item_view(d) for d in docs]


def create_menu_item(stall_id: str, payload: MenuItemCreate, image: Optional[ImageFile], store) -> Dict[str, Any]:
    validate_image(image)
    get_stall_doc(stall_id)

    menu_item_id = new_id()
    image_url = upload_image(store, MENU_ITEMS_PATH, stall_id, image)
    item = MenuItem(
        stall_id=stall_id,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        price=payload.price,
        image_url=image_url,
        is_available=payload.is_available,
    )
    create_document(MENU_ITEMS, item, doc_id=menu_item_id)
    return get_menu_item(menu_item_id)


def update_menu_item(
    stall_id: str,
    menu_item_id: str,
    payload: MenuItemUpdate,
    image: Optional[ImageFile],
    store,
) -> Dict[str, Any]:
    current = _owned_menu_item(stall_id, menu_item_id)
    validate_image(image, required=False)

    updates = payload.model_dump(exclude_none=True)
    if image is not None:
        updates["image_url"] = upload_image(store, MENU_ITEMS_PATH, stall_id, image)
    if updates:
        update_document(MENU_ITEMS, menu_item_id, updates)
    if image is not None:
        delete_image_quietly(store, current.get("image_url"))
    return get_menu_item(menu_item_id)


def delete_menu_item(stall_id: str, menu_item_id: str, store) -> None:
    current = _owned_menu_item(stall_id, menu_item_id)
    delete_document(MENU_ITEMS, menu_item_id)
    delete_image_quietly(store, current.get("image_url"))


def remove_menu_items_for_stall(stall_id: str, store) -> None:
    """Cleanup after a stall is removed; never fails the caller."""
    try:
        docs = get_documents(MENU_ITEMS, {"stall_id": stall_id})
        collection(MENU_ITEMS).delete_many({"stall_id": stall_id})
        for doc in docs:
            delete_image_quietly(store, doc.get("image_url"))
    except Exception:
        logger.exception("Failed to remove menu items of stall %s", stall_id)
