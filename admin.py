"""
Admin reporting and user management.

Each mutation is a single conditional update on one user document and reports
NotFound when the id matches nothing.
"""
import logging
from datetime import timedelta
from typing import Dict, List

from pymongo.database import Database

from database import BOOKS, ORDERS, USERS, now_utc, sanitize, to_obj_id
from errors import NotFound, ValidationError
from loyalty import is_premium_active, loyalty_tier

logger = logging.getLogger(__name__)

MAX_USERS = 100


def get_stats(db: Database) -> Dict:
    users = db[USERS]
    orders = db[ORDERS]
    revenue = list(orders.aggregate([
        {"$match": {"status": "completed"}},
        {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
    ]))
    return {
        "total_users": users.count_documents({}),
        "total_books": db[BOOKS].count_documents({}),
        "total_orders": orders.count_documents({}),
        "premium_users": sum(
            1 for u in users.find({"is_premium": True}, {"is_premium": 1, "premium_until": 1}) if is_premium_active(u)
        ),
        "customers": users.count_documents({"role": "customer"}),
        "moderators": users.count_documents({"role": "moderator"}),
        "admins": users.count_documents({"role": "admin"}),
        "pending_orders": orders.count_documents({"status": "pending"}),
        "completed_orders": orders.count_documents({"status": "completed"}),
        "cancelled_orders": orders.count_documents({"status": "cancelled"}),
        "total_revenue": revenue[0]["total"] if revenue else 0.0,
    }


def _with_tier(user: Dict) -> Dict:
    u = sanitize(user)
    u["loyalty_level"], u["loyalty_discount"] = loyalty_tier(u.get("loyalty_points", 0))
    return u


def list_users(db: Database) -> List[Dict]:
    return [_with_tier(u) for u in db[USERS].find({}).limit(MAX_USERS)]


def get_user(db: Database, user_id: str) -> Dict:
    user = db[USERS].find_one({"_id": to_obj_id(user_id, "user id")})
    if not user:
        raise NotFound("User not found")
    return _with_tier(user)


def _update_user(db: Database, user_id: str, fields: Dict) -> None:
    fields["updated_at"] = now_utc()
    res = db[USERS].update_one({"_id": to_obj_id(user_id, "user id")}, {"$set": fields})
    if res.matched_count == 0:
        raise NotFound("User not found")


def deactivate_user(db: Database, user_id: str) -> None:
    _update_user(db, user_id, {"is_active": False})
    logger.info("User %s deactivated", user_id)


def grant_premium(db: Database, user_id: str, days: int):
    premium_until = now_utc() + timedelta(days=days)
    _update_user(db, user_id, {"is_premium": True, "premium_until": premium_until})
    logger.info("User %s premium until %s", user_id, premium_until.isoformat())
    return premium_until


def update_role(db: Database, user_id: str, role: str) -> None:
    _update_user(db, user_id, {"role": role})
    logger.info("User %s role set to %s", user_id, role)


def delete_user(db: Database, user_id: str, acting_user_id: str) -> None:
    if user_id == acting_user_id:
        raise ValidationError("Cannot delete your own account")
    res = db[USERS].delete_one({"_id": to_obj_id(user_id, "user id")})
    if res.deleted_count == 0:
        raise NotFound("User not found")
    logger.info("User %s deleted by %s", user_id, acting_user_id)
