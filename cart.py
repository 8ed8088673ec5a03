"""
Shopping cart: one document per user, keyed by the user id.

A cart only ever holds items of a single stall and is deleted rather than
stored empty. Every write is a compare-and-swap on the cart's `version`, so
two concurrent adds from the same user both land.

While a checkout holds the cart (`checkout_order_id` is set) the cart cannot
be modified. A claim left behind by an interrupted checkout is repaired on the
next access: if the order was written the cart is deleted, otherwise the
claim is released once it is older than CHECKOUT_CLAIM_TTL_SECONDS.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

import catalog
import config
from database import collection, get_document, utc_now
from errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from schemas import Cart, CartItem

logger = logging.getLogger(__name__)

CARTS = "carts"
ORDERS = "orders"
MAX_QUANTITY = 99

CHECKOUT_IN_PROGRESS = "A checkout is in progress for this cart"


def _load_cart_doc(user_id: str) -> Optional[dict]:
    return get_document(CARTS, user_id)


def _claim_is_stale(doc: dict) -> bool:
    claimed_at = doc.get("checkout_claimed_at")
    if claimed_at is None:
        return True
    return utc_now() - claimed_at > timedelta(seconds=config.CHECKOUT_CLAIM_TTL_SECONDS)


def _current_cart(user_id: str, for_write: bool) -> Optional[dict]:
    """Load the cart, repairing a checkout claim left behind if needed."""
    doc = _load_cart_doc(user_id)
    if not doc or not doc.get("checkout_order_id"):
        return doc

    order_id = doc["checkout_order_id"]
    if get_document(ORDERS, order_id):
        delete_claimed_cart(user_id, order_id)
        logger.info("Removed cart of user %s already checked out as order %s", user_id, order_id)
        return None
    if _claim_is_stale(doc):
        release_cart(user_id, order_id)
        logger.warning("Released stale checkout claim %s on cart of user %s", order_id, user_id)
        return _load_cart_doc(user_id)
    if for_write:
        raise InvalidStateError(CHECKOUT_IN_PROGRESS)
    return doc


def _build_cart(user_id: str, stall_id: str, stall_name: str, items: List[dict]) -> Dict[str, Any]:
    cart_items = [CartItem(**item) for item in items]
    cart = Cart(
        user_id=user_id,
        stall_id=stall_id,
        stall_name=stall_name,
        items=cart_items,
        total_price=sum(item.subtotal for item in cart_items),
    )
    data = cart.model_dump()
    data.pop("version")
    return data


def _compare_and_swap(user_id: str, current: Optional[dict], new: Optional[dict]) -> bool:
    carts = collection(CARTS)
    if current is None:
        if new is None:
            return True
        now = utc_now()
        doc = dict(new, _id=user_id, version=1, checkout_order_id=None, checkout_claimed_at=None,
                   created_at=now, updated_at=now)
        try:
            carts.insert_one(doc)
        except DuplicateKeyError:
            return False
        return True

    guard = {"_id": user_id, "version": current["version"], "checkout_order_id": None}
    if new is None:
        return carts.delete_one(guard).deleted_count == 1
    result = carts.update_one(
        guard,
        {"$set": dict(new, updated_at=utc_now()), "$inc": {"version": 1}},
    )
    return result.matched_count == 1


def _write_cart(user_id: str, mutate: Callable[[Optional[dict]], Optional[dict]]) -> Optional[dict]:
    """Apply `mutate` to the latest cart until the compare-and-swap wins."""
    for attempt in range(config.CART_WRITE_RETRIES):
        current = _current_cart(user_id, for_write=True)
        new = mutate(current)
        if _compare_and_swap(user_id, current, new):
            return new
        logger.debug("Cart of user %s changed concurrently, retry %d", user_id, attempt + 1)
    raise ConflictError("Cart was modified concurrently, please try again")


def _line_from_menu_item(menu_item: dict, quantity: int) -> Dict[str, Any]:
    return {
        "menu_item_id": str(menu_item["_id"]),
        "name": menu_item["name"],
        "price": menu_item["price"],
        "image_url": menu_item.get("image_url"),
        "quantity": quantity,
        "subtotal": menu_item["price"] * quantity,
    }


def _require_line(doc: Optional[dict], menu_item_id: str) -> None:
    if not doc:
        raise NotFoundError("Cart not found")
    if not any(item["menu_item_id"] == menu_item_id for item in doc["items"]):
        raise NotFoundError("Item not found in cart")


def cart_view(doc: dict) -> Dict[str, Any]:
    stall = get_document(catalog.STALLS, doc["stall_id"])
    return {
        "user_id": doc["user_id"],
        "stall_id": doc["stall_id"],
        "stall_name": doc["stall_name"],
        "qris_image_url": stall.get("qris_image_url") if stall else None,
        "items": doc["items"],
        "total_price": doc["total_price"],
    }


def get_cart(user_id: str) -> Optional[Dict[str, Any]]:
    doc = _current_cart(user_id, for_write=False)
    return cart_view(doc) if doc else None


def add_to_cart(user_id: str, menu_item_id: str, quantity: int = 1) -> Dict[str, Any]:
    menu_item = get_document(catalog.MENU_ITEMS, menu_item_id)
    if not menu_item:
        raise NotFoundError("Menu item not found")
    if not menu_item.get("is_available", True):
        raise InvalidStateError(f"{menu_item['name']} is not available right now")
    stall = get_document(catalog.STALLS, menu_item["stall_id"])
    if not stall:
        raise NotFoundError("Stall not found")
    stall_id = str(stall["_id"])

    def mutate(doc):
        if doc and doc["stall_id"] != stall_id:
            raise InvalidStateError(
                f"Your cart has items from {doc['stall_name']}. "
                f"Clear the cart before ordering from {stall['name']}"
            )
        items = list(doc["items"]) if doc else []
        for index, item in enumerate(items):
            if item["menu_item_id"] == menu_item_id:
                new_quantity = item["quantity"] + quantity
                if new_quantity > MAX_QUANTITY:
                    raise ValidationError(f"Quantity cannot exceed {MAX_QUANTITY}")
                items[index] = _line_from_menu_item(menu_item, new_quantity)
                break
        else:
            items.append(_line_from_menu_item(menu_item, quantity))
        return _build_cart(user_id, stall_id, stall["name"], items)

    _write_cart(user_id, mutate)
    return get_cart(user_id)


def update_item_quantity(user_id: str, menu_item_id: str, quantity: int) -> Dict[str, Any]:
    if quantity < 1 or quantity > MAX_QUANTITY:
        raise ValidationError(f"Quantity must be between 1 and {MAX_QUANTITY}")

    def mutate(doc):
        _require_line(doc, menu_item_id)
        items = []
        for item in doc["items"]:
            if item["menu_item_id"] == menu_item_id:
                item = dict(item, quantity=quantity, subtotal=item["price"] * quantity)
            items.append(item)
        return _build_cart(user_id, doc["stall_id"], doc["stall_name"], items)

    _write_cart(user_id, mutate)
    return get_cart(user_id)


def remove_item(user_id: str, menu_item_id: str) -> Optional[Dict[str, Any]]:
    """Remove one line; returns the remaining cart, or None once it is empty."""

    def mutate(doc):
        _require_line(doc, menu_item_id)
        items = [item for item in doc["items"] if item["menu_item_id"] != menu_item_id]
        if not items:
            return None
        return _build_cart(user_id, doc["stall_id"], doc["stall_name"], items)

    remaining = _write_cart(user_id, mutate)
    return get_cart(user_id) if remaining else None


def clear_cart(user_id: str) -> None:
    _write_cart(user_id, lambda doc: None)


# Checkout boundary
def load_cart_for_checkout(user_id: str) -> Optional[dict]:
    """Raw cart document (with `version`) for a checkout to snapshot."""
    return _current_cart(user_id, for_write=True)


def claim_cart(user_id: str, version: int, order_id: str) -> bool:
    result = collection(CARTS).update_one(
        {"_id": user_id, "version": version, "checkout_order_id": None},
        {
            "$set": {"checkout_order_id": order_id, "checkout_claimed_at": utc_now()},
            "$inc": {"version": 1},
        },
    )
    return result.matched_count == 1


def release_cart(user_id: str, order_id: str) -> None:
    collection(CARTS).update_one(
        {"_id": user_id, "checkout_order_id": order_id},
        {
            "$set": {"checkout_order_id": None, "checkout_claimed_at": None, "updated_at": utc_now()},
            "$inc": {"version": 1},
        },
    )


def renew_claim(user_id: str, order_id: str) -> bool:
    """Refresh a held claim; False once it was released as stale."""
    result = collection(CARTS).update_one(
        {"_id": user_id, "checkout_order_id": order_id},
        {"$set": {"checkout_claimed_at": utc_now()}},
    )
    return result.matched_count == 1


def delete_claimed_cart(user_id: str, order_id: str, claimed_version: Optional[int] = None) -> bool:
    """
    Delete the cart an order was placed from.

    If the claim was released in the meantime, the cart is still deleted as
    long as nothing changed it after the release (`claimed_version` + 1).
    """
    carts = collection(CARTS)
    if carts.delete_one({"_id": user_id, "checkout_order_id": order_id}).deleted_count == 1:
        return True
    if claimed_version is None:
        return False
    guard = {"_id": user_id, "version": claimed_version + 1, "checkout_order_id": None}
    return carts.delete_one(guard).deleted_count == 1
