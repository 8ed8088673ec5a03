"""
Order engine
============
Turns a cart into an order and drives the order through its payment and
fulfillment lifecycle.

State flow:
    checkout -> WAITING_CONFIRMATION -> PROCESSING -> COMPLETED
                WAITING_CONFIRMATION -> REJECTED -> WAITING_CONFIRMATION

With COMPLETE_FROM_READY set, PROCESSING -> READY -> COMPLETED is available
as well. Without it READY cannot be entered.

Invariants:
- total_price == items_total + app_fee + delivery_fee, always computed here
- items are a snapshot of the cart and never change after checkout
- every transition is a conditional update on the current status, so two
  concurrent transitions of the same order cannot both succeed
- the legacy persisted status "confirmed" is read as PROCESSING and never
  written
"""

import logging
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pymongo import ReturnDocument

import cart
import catalog
import config
from database import collection, count_documents, create_document, get_document, new_id, query_documents, update_document, utc_now
from errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from responses import isoformat, pagination_meta, serialize_doc
from schemas import DeliveryMethod, Order, OrderItem, OrderStatus
from storage import ImageFile, delete_image_quietly, upload_image, validate_image

logger = logging.getLogger(__name__)

ORDERS = "orders"
PAYMENT_PROOFS_PATH = "payment-proofs"

LEGACY_STATUS_ALIASES = {"confirmed": OrderStatus.PROCESSING.value}


def normalize_legacy_status(status: str) -> str:
    return LEGACY_STATUS_ALIASES.get(status, status)


def raw_statuses(status: str) -> List[str]:
    """Every persisted value that reads as `status`."""
    return [status] + [legacy for legacy, current in LEGACY_STATUS_ALIASES.items() if current == status]


class OrderEvent(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    MARK_READY = "mark_ready"
    COMPLETE = "complete"
    RESUBMIT_PROOF = "resubmit_proof"


# event -> (allowed source states, target state)
TRANSITIONS = {
    OrderEvent.CONFIRM: ({OrderStatus.WAITING_CONFIRMATION}, OrderStatus.PROCESSING),
    OrderEvent.REJECT: ({OrderStatus.WAITING_CONFIRMATION}, OrderStatus.REJECTED),
    OrderEvent.MARK_READY: ({OrderStatus.PROCESSING}, OrderStatus.READY),
    OrderEvent.COMPLETE: ({OrderStatus.PROCESSING}, OrderStatus.COMPLETED),
    OrderEvent.RESUBMIT_PROOF: ({OrderStatus.REJECTED}, OrderStatus.WAITING_CONFIRMATION),
}

_EVENT_VERBS = {
    OrderEvent.CONFIRM: "confirmed",
    OrderEvent.REJECT: "rejected",
    OrderEvent.MARK_READY: "marked as ready",
    OrderEvent.COMPLETE: "completed",
    OrderEvent.RESUBMIT_PROOF: "given a new payment proof",
}


def allowed_sources(event: OrderEvent) -> set:
    sources = {s.value for s in TRANSITIONS[event][0]}
    if not config.COMPLETE_FROM_READY:
        return set() if event == OrderEvent.MARK_READY else sources
    if event == OrderEvent.COMPLETE:
        sources.add(OrderStatus.READY.value)
    return sources


def can_transition(status: str, event: OrderEvent) -> bool:
    return normalize_legacy_status(status) in allowed_sources(event)


def _invalid_state(event: OrderEvent, status: str) -> InvalidStateError:
    return InvalidStateError(
        f"Order cannot be {_EVENT_VERBS[event]} while its status is '{normalize_legacy_status(status)}'"
    )


# Totals
def compute_totals(items: Sequence[Any], delivery_method: str) -> Dict[str, int]:
    items_total = sum(item["subtotal"] if isinstance(item, dict) else item.subtotal for item in items)
    app_fee = config.APP_FEE
    delivery_fee = config.DELIVERY_FEE if delivery_method == DeliveryMethod.DELIVERY.value else 0
    return {
        "items_total": items_total,
        "app_fee": app_fee,
        "delivery_fee": delivery_fee,
        "total_price": items_total + app_fee + delivery_fee,
    }


def parse_delivery_method(value: Optional[str]) -> str:
    try:
        return DeliveryMethod((value or "").strip().lower()).value
    except ValueError:
        raise ValidationError("delivery_method must be one of: pickup, delivery")


def parse_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    status = normalize_legacy_status(value.strip().lower())
    try:
        return OrderStatus(status).value
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"status must be one of: {allowed}")


# Views
def order_view(doc: dict) -> Dict[str, Any]:
    data = serialize_doc(doc)
    data["status"] = normalize_legacy_status(data["status"])
    return data


def order_summary(doc: dict) -> Dict[str, Any]:
    return {
        "order_id": str(doc["_id"]),
        "order_date": isoformat(doc.get("created_at")),
        "stall_name": doc["stall_name"],
        "stall_image_url": doc.get("stall_image_url", ""),
        "menu_items": [f"{item['name']} ({item['quantity']}x)" for item in doc["items"]],
        "total_price": doc["total_price"],
        "delivery_method": doc["delivery_method"],
        "rejection_reason": doc.get("rejection_reason"),
        "status": normalize_legacy_status(doc["status"]),
        "has_reviewed": doc.get("is_reviewed", False),
    }


def get_order_doc(order_id: str) -> dict:
    doc = get_document(ORDERS, order_id)
    if not doc:
        raise NotFoundError("Order not found")
    return doc


def _user_order(user_id: str, order_id: str) -> dict:
    doc = get_order_doc(order_id)
    if doc["user_id"] != user_id:
        raise ForbiddenError("This order belongs to another user")
    return doc


def _stall_order(stall_id: str, order_id: str) -> dict:
    doc = get_order_doc(order_id)
    if doc["stall_id"] != stall_id:
        raise ForbiddenError("This order belongs to another stall")
    return doc


# Checkout
def checkout(user_id: str, proof: Optional[ImageFile], delivery_method: Optional[str], store) -> Dict[str, Any]:
    """
    Place an order from the caller's cart.

    The cart is claimed before the proof is uploaded. A failed upload releases
    the claim and leaves no order; a failed order write releases the claim and
    removes the uploaded proof. The claim is renewed right before the order
    write, so a checkout whose claim was released as stale places no order.
    The cart is deleted only once the order exists.
    """
    method = parse_delivery_method(delivery_method)
    snapshot = cart.load_cart_for_checkout(user_id)
    if not snapshot or not snapshot.get("items"):
        raise InvalidStateError("Cart is empty")
    validate_image(proof)

    stall = get_document(catalog.STALLS, snapshot["stall_id"])
    order_id = new_id()
    if not cart.claim_cart(user_id, snapshot["version"], order_id):
        raise InvalidStateError("Cart changed during checkout, please try again")

    try:
        proof_url = upload_image(store, PAYMENT_PROOFS_PATH, order_id, proof)
    except Exception:
        logger.error("Payment proof upload failed for order %s", order_id)
        cart.release_cart(user_id, order_id)
        raise

    items = [OrderItem(**item) for item in snapshot["items"]]
    order = Order(
        user_id=user_id,
        stall_id=snapshot["stall_id"],
        stall_name=snapshot["stall_name"],
        stall_image_url=(stall or {}).get("stall_image_url") or "",
        items=items,
        delivery_method=method,
        payment_proof_url=proof_url,
        status=OrderStatus.WAITING_CONFIRMATION,
        **compute_totals(items, method),
    )
    if not cart.renew_claim(user_id, order_id):
        logger.warning("Checkout claim %s was released before the order was written", order_id)
        delete_image_quietly(store, proof_url)
        raise InvalidStateError("Checkout took too long, please try again")

    try:
        create_document(ORDERS, order, doc_id=order_id)
    except Exception:
        logger.error("Order write failed for order %s, releasing cart", order_id)
        cart.release_cart(user_id, order_id)
        delete_image_quietly(store, proof_url)
        raise

    claimed_version = snapshot["version"] + 1
    try:
        if not cart.delete_claimed_cart(user_id, order_id, claimed_version):
            logger.warning("Cart of user %s changed after order %s was placed, keeping it", user_id, order_id)
    except Exception:
        # the next cart access finds the order and removes the cart
        logger.exception("Could not delete cart after order %s", order_id)

    logger.info(
        "Order placed",
        extra={"order_id": order_id, "user_id": user_id, "to_status": OrderStatus.WAITING_CONFIRMATION.value},
    )
    return order_view(get_order_doc(order_id))


# Transitions
def _transition(order: dict, event: OrderEvent, updates: Optional[Dict[str, Any]] = None) -> dict:
    order_id = str(order["_id"])
    if not can_transition(order["status"], event):
        raise _invalid_state(event, order["status"])

    target = TRANSITIONS[event][1].value
    raw = [r for s in allowed_sources(event) for r in raw_statuses(s)]
    changes = dict(updates or {}, status=target, updated_at=utc_now())
    updated = collection(ORDERS).find_one_and_update(
        {"_id": order_id, "status": {"$in": raw}},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = get_order_doc(order_id)
        raise _invalid_state(event, latest["status"])

    logger.info(
        "Order transition: %s -> %s",
        normalize_legacy_status(order["status"]),
        target,
        extra={"order_id": order_id, "event": event.value, "to_status": target},
    )
    return updated


def confirm_order(stall_id: str, order_id: str) -> Dict[str, Any]:
    return order_view(_transition(_stall_order(stall_id, order_id), OrderEvent.CONFIRM))


def reject_order(stall_id: str, order_id: str, reason: str) -> Dict[str, Any]:
    reason = (reason or "").strip()
    if not 10 <= len(reason) <= 500:
        raise ValidationError("Rejection reason must be between 10 and 500 characters")
    order = _stall_order(stall_id, order_id)
    return order_view(_transition(order, OrderEvent.REJECT, {"rejection_reason": reason}))


def mark_ready(stall_id: str, order_id: str) -> Dict[str, Any]:
    order = _stall_order(stall_id, order_id)
    if not config.COMPLETE_FROM_READY:
        raise InvalidStateError("Orders are completed directly from processing; the ready step is disabled")
    return order_view(_transition(order, OrderEvent.MARK_READY))


def complete_order(stall_id: str, order_id: str) -> Dict[str, Any]:
    return order_view(_transition(_stall_order(stall_id, order_id), OrderEvent.COMPLETE))


def resubmit_proof(user_id: str, order_id: str, proof: Optional[ImageFile], store) -> Dict[str, Any]:
    order = _user_order(user_id, order_id)
    if not can_transition(order["status"], OrderEvent.RESUBMIT_PROOF):
        raise _invalid_state(OrderEvent.RESUBMIT_PROOF, order["status"])
    validate_image(proof)

    new_url = upload_image(store, PAYMENT_PROOFS_PATH, order_id, proof)
    try:
        updated = _transition(
            order, OrderEvent.RESUBMIT_PROOF, {"payment_proof_url": new_url, "rejection_reason": None}
        )
    except Exception:
        delete_image_quietly(store, new_url)
        raise
    delete_image_quietly(store, order.get("payment_proof_url"))
    return order_view(updated)


def mark_reviewed(order_id: str) -> None:
    update_document(ORDERS, order_id, {"is_reviewed": True})


# History
def _history_filters(
    base: Dict[str, Any],
    status: Optional[str],
    start_date: Optional[date],
    end_date: Optional[date],
) -> Dict[str, Any]:
    filters = dict(base)
    status = parse_status(status)
    if status:
        filters["status"] = {"$in": raw_statuses(status)}
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date must not be after end_date")
    created: Dict[str, Any] = {}
    if start_date:
        created["$gte"] = datetime.combine(start_date, time.min)
    if end_date:
        created["$lt"] = datetime.combine(end_date + timedelta(days=1), time.min)
    if created:
        filters["created_at"] = created
    return filters


def _page(filters: Dict[str, Any], page: int, limit: int) -> Tuple[List[dict], Dict[str, int]]:
    if page < 1:
        raise ValidationError("page must be at least 1")
    if not 1 <= limit <= 100:
        raise ValidationError("limit must be between 1 and 100")
    total = count_documents(ORDERS, filters)
    docs = query_documents(ORDERS, filters, [("created_at", -1), ("_id", -1)], limit=limit, offset=(page - 1) * limit)
    return docs, pagination_meta(total, page, limit)


def list_user_orders(
    user_id: str,
    status: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    filters = _history_filters({"user_id": user_id}, status, start_date, end_date)
    docs, meta = _page(filters, page, limit)
    return [order_summary(d) for d in docs], meta


def get_user_order(user_id: str, order_id: str) -> Dict[str, Any]:
    return order_view(_user_order(user_id, order_id))


def list_stall_orders(
    stall_id: str,
    status: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    filters = _history_filters({"stall_id": stall_id}, status, start_date, end_date)
    docs, meta = _page(filters, page, limit)
    return [order_view(d) for d in docs], meta


def get_stall_order(stall_id: str, order_id: str) -> Dict[str, Any]:
    return order_view(_stall_order(stall_id, order_id))
