"""
Order workflow.

Checkout validates every line before touching the database, reserves stock
with conditional decrements, then writes the order. Once the order document
exists the request succeeds: failures while writing line items, loyalty
points or library grants are logged and skipped rather than surfaced.
"""
import logging
import math
import os
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import CurrentUser
from catalog import find_format, load_book
from database import (
    BOOKS,
    DIGITAL_ACCESS,
    ORDER_ITEMS,
    ORDERS,
    USERS,
    create_document,
    now_utc,
    sanitize,
    to_obj_id,
)
from errors import Forbidden, InsufficientStock, InternalError, InvalidFormat, InvalidState, NotFound
from loyalty import PREMIUM_DISCOUNT, is_premium_active, loyalty_tier, stacked_discount
from schemas import DIGITAL_FORMATS, CreateOrderRequest, DigitalAccess, Order, OrderItem

logger = logging.getLogger(__name__)

ACCESS_BASE_URL = os.getenv("ACCESS_BASE_URL", "https://library.bookstore.com/access")
DIGITAL_ACCESS_DAYS = 365
TERMINAL_STATUSES = ("completed", "cancelled")
STAFF_ROLES = ("admin", "moderator")


def price_order(subtotal: float, premium: bool, loyalty_points: int) -> Tuple[float, float]:
    """Returns (discount fraction, total after discount)."""
    premium_discount = PREMIUM_DISCOUNT if premium else 0.0
    _, loyalty_discount = loyalty_tier(loyalty_points)
    discount = stacked_discount(premium_discount, loyalty_discount)
    return discount, subtotal * (1 - discount)


def access_url(order_id: str, book_id: str, format_type: str) -> str:
    return f"{ACCESS_BASE_URL}/{order_id}/{book_id}/{format_type}"


def _validate_lines(db: Database, payload: CreateOrderRequest) -> Tuple[List[Dict], float]:
    lines: List[Dict] = []
    requested: Dict[Tuple[str, str], int] = {}
    subtotal = 0.0
    books: Dict[str, Dict] = {}
    for item in payload.items:
        book = books.get(item.book_id) or load_book(db, item.book_id)
        books[item.book_id] = book
        fmt = find_format(book, item.format_type)
        if fmt is None:
            raise InvalidFormat(f"Format {item.format_type} not available for book {item.book_id}")
        key = (item.book_id, item.format_type)
        requested[key] = requested.get(key, 0) + item.quantity
        if requested[key] > fmt.get("stock_quantity", 0):
            raise InsufficientStock(f"Insufficient stock for {book.get('title', item.book_id)} ({item.format_type})")
        price = float(fmt["price"])
        subtotal += price * item.quantity
        lines.append({
            "book_id": item.book_id,
            "book_oid": book["_id"],
            "format_type": item.format_type,
            "quantity": item.quantity,
            "price": price,
        })
    return lines, subtotal


def _release_stock(db: Database, reserved: List[Tuple[ObjectId, str, int]]) -> None:
    for book_oid, format_type, qty in reserved:
        try:
            db[BOOKS].update_one(
                {"_id": book_oid, "formats.type": format_type},
                {"$inc": {"formats.$.stock_quantity": qty}},
            )
            logger.warning("Released %d of %s/%s", qty, book_oid, format_type)
        except PyMongoError:
            logger.exception("Could not release %d of %s/%s", qty, book_oid, format_type)


def _reserve_stock(db: Database, lines: List[Dict]) -> List[Tuple[ObjectId, str, int]]:
    wanted: Dict[Tuple[ObjectId, str], int] = {}
    for line in lines:
        key = (line["book_oid"], line["format_type"])
        wanted[key] = wanted.get(key, 0) + line["quantity"]

    reserved: List[Tuple[ObjectId, str, int]] = []
    ts = now_utc()
    try:
        for (book_oid, format_type), qty in wanted.items():
            res = db[BOOKS].update_one(
                {"_id": book_oid, "formats": {"$elemMatch": {"type": format_type, "stock_quantity": {"$gte": qty}}}},
                {"$inc": {"formats.$.stock_quantity": -qty}, "$set": {"updated_at": ts}},
            )
            if res.matched_count == 0:
                _release_stock(db, reserved)
                raise InsufficientStock(f"Insufficient stock for book {book_oid} ({format_type})")
            reserved.append((book_oid, format_type, qty))
    except PyMongoError:
        _release_stock(db, reserved)
        raise
    return reserved


def _load_buyer(db: Database, user_id: str) -> Dict:
    buyer = db[USERS].find_one({"_id": to_obj_id(user_id, "user id")})
    if not buyer:
        raise NotFound("User not found")
    if not buyer.get("is_active", True):
        raise Forbidden("Account is deactivated")
    return buyer


def create_order(db: Database, user: CurrentUser, payload: CreateOrderRequest) -> Dict:
    lines, subtotal = _validate_lines(db, payload)
    buyer = _load_buyer(db, user.id)
    discount, total = price_order(subtotal, is_premium_active(buyer), buyer.get("loyalty_points", 0))

    reserved = _reserve_stock(db, lines)

    ts = now_utc()
    needs_delivery = any(line["format_type"] != "digital" for line in lines)
    order = Order(
        user_id=user.id,
        subtotal=subtotal,
        discount=discount,
        total_amount=total,
        item_count=sum(line["quantity"] for line in lines),
        delivery_status="pending" if needs_delivery else None,
        delivery_address=payload.delivery_address,
        order_date=ts,
    )
    try:
        order_id = create_document(db, ORDERS, order)
    except PyMongoError:
        logger.exception("Failed to create order for user %s", user.id)
        _release_stock(db, reserved)
        raise InternalError("Failed to create order")

    items = [
        {**OrderItem(
            order_id=order_id,
            book_id=line["book_id"],
            format_type=line["format_type"],
            quantity=line["quantity"],
            price=line["price"],
        ).model_dump(), "created_at": ts}
        for line in lines
    ]
    try:
        db[ORDER_ITEMS].insert_many(items)
    except PyMongoError:
        logger.exception("Order %s: failed to write line items", order_id)

    points = math.floor(subtotal)
    try:
        db[USERS].update_one({"_id": buyer["_id"]}, {"$inc": {"loyalty_points": points}, "$set": {"updated_at": ts}})
    except PyMongoError:
        logger.exception("Order %s: failed to award %d loyalty points", order_id, points)

    granted = set()
    for line in lines:
        key = (line["book_id"], line["format_type"])
        if key in granted:
            continue
        granted.add(key)
        if line["format_type"] in DIGITAL_FORMATS:
            grant = DigitalAccess(
                user_id=user.id,
                book_id=line["book_id"],
                format_type=line["format_type"],
                order_id=order_id,
                access_granted_date=ts,
                expiry_date=ts + timedelta(days=DIGITAL_ACCESS_DAYS),
                access_url=access_url(order_id, line["book_id"], line["format_type"]),
            )
        else:
            # physical purchases only populate the personal library
            grant = DigitalAccess(
                user_id=user.id,
                book_id=line["book_id"],
                format_type=line["format_type"],
                order_id=order_id,
                access_granted_date=ts,
            )
        try:
            create_document(db, DIGITAL_ACCESS, grant)
        except PyMongoError:
            logger.exception("Order %s: failed to grant access to %s/%s", order_id, *key)

    logger.info("Order %s created for user %s: subtotal=%.2f discount=%.4f total=%.2f",
                order_id, user.id, subtotal, discount, total)
    return {
        "message": "Order created successfully",
        "order_id": order_id,
        "subtotal": subtotal,
        "discount": discount,
        "total_amount": total,
        "loyalty_points_earned": points,
    }


def _attach_items(db: Database, orders: List[Dict]) -> List[Dict]:
    result = [sanitize(o) for o in orders]
    if not result:
        return result
    by_order: Dict[str, List[Dict]] = {o["id"]: [] for o in result}
    for item in db[ORDER_ITEMS].find({"order_id": {"$in": list(by_order)}}):
        by_order[item["order_id"]].append(sanitize(item))
    for o in result:
        o["items"] = by_order[o["id"]]
    return result


def list_orders(db: Database, user_id: Optional[str] = None) -> List[Dict]:
    q = {"user_id": user_id} if user_id else {}
    return _attach_items(db, list(db[ORDERS].find(q).sort("created_at", -1)))


def _load_order(db: Database, order_id: str) -> Dict:
    order = db[ORDERS].find_one({"_id": to_obj_id(order_id, "order id")})
    if not order:
        raise NotFound("Order not found")
    return order


def get_order(db: Database, order_id: str, user: CurrentUser) -> Dict:
    order = _load_order(db, order_id)
    if order["user_id"] != user.id and user.role not in STAFF_ROLES:
        raise Forbidden("Cannot view other user's order")
    return _attach_items(db, [order])[0]


def cancel_order(db: Database, order_id: str, user: CurrentUser) -> None:
    order = _load_order(db, order_id)
    if order["user_id"] != user.id:
        raise Forbidden("Cannot cancel other user's order")
    if order.get("status") in TERMINAL_STATUSES:
        raise InvalidState(f"Cannot cancel order with status: {order['status']}")
    res = db[ORDERS].update_one(
        {"_id": order["_id"], "status": "pending"},
        {"$set": {"status": "cancelled", "updated_at": now_utc()}},
    )
    if res.matched_count == 0:
        raise InvalidState("Order is no longer pending")
    logger.info("Order %s cancelled by owner %s", order_id, user.id)


def update_order_status(db: Database, order_id: str, status: str) -> None:
    oid = to_obj_id(order_id, "order id")
    res = db[ORDERS].update_one(
        {"_id": oid, "status": "pending"},
        {"$set": {"status": status, "updated_at": now_utc()}},
    )
    if res.matched_count == 0:
        current = db[ORDERS].find_one({"_id": oid}, {"status": 1})
        if not current:
            raise NotFound("Order not found")
        raise InvalidState(f"Cannot change order with status: {current.get('status')}")
    logger.info("Order %s status set to %s", order_id, status)


def update_delivery(db: Database, order_id: str, delivery_status: str, delivery_address: Optional[str] = None) -> None:
    data = {"delivery_status": delivery_status, "updated_at": now_utc()}
    if delivery_address:
        data["delivery_address"] = delivery_address
    res = db[ORDERS].update_one({"_id": to_obj_id(order_id, "order id")}, {"$set": data})
    if res.matched_count == 0:
        raise NotFound("Order not found")
    logger.info("Order %s delivery status set to %s", order_id, delivery_status)
