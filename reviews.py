"""
Reviews: one per completed order.

Creating a review flags the order as reviewed and recomputes the stall's
rating from all of its reviews. Both follow-ups are best-effort; a review that
was written stays written, and a missing flag is set again on the next
attempt to review the order.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

import catalog
import orders
from database import collection, count_documents, create_document, get_document, new_id, query_documents
from errors import ForbiddenError, InvalidStateError, ValidationError
from responses import pagination_meta, serialize_doc
from schemas import OrderStatus, Review, ReviewCreate
from storage import ImageFile, delete_image_quietly, upload_image, validate_image

logger = logging.getLogger(__name__)

REVIEWS = "reviews"
REVIEW_IMAGES_PATH = "reviews"
MAX_REVIEW_IMAGES = 5

REVIEW_SORT_FIELDS = {"created_at": "created_at", "rating": "rating"}

ALREADY_REVIEWED = "This order has already been reviewed"


def review_view(doc: dict) -> Dict[str, Any]:
    return serialize_doc(doc)


def round_rating(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def create_review(
    user: Dict[str, Any],
    order_id: str,
    payload: ReviewCreate,
    images: List[ImageFile],
    store,
) -> Dict[str, Any]:
    order = orders.get_order_doc(order_id)
    if order["user_id"] != user["uid"]:
        raise ForbiddenError("You can only review your own orders")
    if orders.normalize_legacy_status(order["status"]) != OrderStatus.COMPLETED.value:
        raise InvalidStateError("Only completed orders can be reviewed")
    if collection(REVIEWS).find_one({"order_id": order_id}):
        _flag_order_reviewed(order_id, order)
        raise InvalidStateError(ALREADY_REVIEWED)

    if len(images) > MAX_REVIEW_IMAGES:
        raise ValidationError(f"At most {MAX_REVIEW_IMAGES} images can be attached")
    for image in images:
        validate_image(image)

    review_id = new_id()
    image_urls = []
    try:
        for image in images:
            image_urls.append(upload_image(store, REVIEW_IMAGES_PATH, review_id, image))
    except Exception:
        for url in image_urls:
            delete_image_quietly(store, url)
        raise

    review = Review(
        order_id=order_id,
        user_id=user["uid"],
        stall_id=order["stall_id"],
        stall_name=order["stall_name"],
        user_name=user.get("username") or "",
        rating=payload.rating,
        comment=payload.comment,
        tags=payload.tags,
        image_urls=image_urls,
    )
    try:
        create_document(REVIEWS, review, doc_id=review_id)
    except DuplicateKeyError:
        for url in image_urls:
            delete_image_quietly(store, url)
        _flag_order_reviewed(order_id, order)
        raise InvalidStateError(ALREADY_REVIEWED)

    _flag_order_reviewed(order_id, order)
    refresh_stall_rating(order["stall_id"])
    logger.info("Review created", extra={"review_id": review_id, "order_id": order_id})
    return review_view(get_document(REVIEWS, review_id))


def _flag_order_reviewed(order_id: str, order: dict) -> None:
    if order.get("is_reviewed"):
        return
    try:
        orders.mark_reviewed(order_id)
    except Exception:
        logger.exception("Failed to flag order %s as reviewed", order_id)


def refresh_stall_rating(stall_id: str) -> None:
    """Recompute rating and total_reviews from every review of the stall."""
    try:
        result = list(
            collection(REVIEWS).aggregate([
                {"$match": {"stall_id": stall_id}},
                {"$group": {"_id": "$stall_id", "average": {"$avg": "$rating"}, "count": {"$sum": 1}}},
            ])
        )
        if result:
            rating, total = round_rating(result[0]["average"]), result[0]["count"]
        else:
            rating, total = 0.0, 0
        catalog.set_stall_rating(stall_id, rating, total)
    except Exception:
        logger.exception("Failed to recompute rating of stall %s", stall_id)


def _list(
    filters: Dict[str, Any],
    rating: Optional[int],
    sort_by: str,
    sort_order: str,
    page: int,
    limit: int,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    if rating is not None:
        filters = dict(filters, rating=rating)
    direction = 1 if sort_order == "asc" else -1
    order_by = [(REVIEW_SORT_FIELDS.get(sort_by, "created_at"), direction), ("_id", direction)]
    total = count_documents(REVIEWS, filters)
    docs = query_documents(REVIEWS, filters, order_by, limit=limit, offset=(page - 1) * limit)
    return [review_view(d) for d in docs], pagination_meta(total, page, limit)


def list_stall_reviews(
    stall_id: str,
    rating: Optional[int] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
):
    catalog.get_stall_doc(stall_id)
    return _list({"stall_id": stall_id}, rating, sort_by, sort_order, page, limit)


def list_my_reviews(
    user_id: str,
    rating: Optional[int] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
):
    return _list({"user_id": user_id}, rating, sort_by, sort_order, page, limit)
