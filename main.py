import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import admin
import catalog
import library
import orders
from auth import CurrentUser, create_access_token, get_current_user, hash_password, require_role, verify_password
from database import USERS, create_document, ensure_indexes, get_db, now_utc, sanitize, to_obj_id
from errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError
from loyalty import is_premium_active, loyalty_badge, loyalty_tier
from schemas import (
    Book,
    CreateOrderRequest,
    GrantPremiumRequest,
    LoginRequest,
    RegisterRequest,
    UpdateBookRequest,
    UpdateDeliveryRequest,
    UpdateOrderStatusRequest,
    UpdateProfileRequest,
    UpdateRoleRequest,
    User as UserSchema,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except PyMongoError:
        logger.exception("Failed to create indexes")
    yield


# App and CORS
app = FastAPI(title="Bookstore API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

admin_only = require_role("admin")
staff_only = require_role("admin", "moderator")


# Error rendering: every failure is {"error": "<message>"}

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg')}" if loc else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Database error"})


# Helpers

def profile(user: Dict) -> Dict[str, Any]:
    u = sanitize(user)
    points = u.get("loyalty_points", 0)
    level, discount = loyalty_tier(points)
    return {
        "id": u["id"],
        "username": u.get("username"),
        "email": u.get("email"),
        "role": u.get("role"),
        "is_premium": is_premium_active(user),
        "premium_until": u.get("premium_until"),
        "loyalty_points": points,
        "loyalty_level": level,
        "loyalty_discount": discount,
        "loyalty_badge": loyalty_badge(level, points),
        "is_active": u.get("is_active", True),
    }


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


# Auth Routes
@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    existing = db[USERS].find_one({"$or": [{"email": payload.email}, {"username": payload.username}]})
    if existing:
        raise Conflict("User with this email or username already exists")
    user_doc = UserSchema(
        username=payload.username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        role="customer",
    )
    try:
        uid = create_document(db, USERS, user_doc)
    except DuplicateKeyError:
        raise Conflict("User with this email or username already exists")
    logger.info("Registered user %s (%s)", uid, payload.username)
    return {"message": "User registered successfully", "user_id": uid}


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        logger.info("Failed login for %s", payload.email)
        raise Unauthorized("Invalid email or password")
    if not user.get("is_active", True):
        raise Forbidden("Account is deactivated")
    token = create_access_token(
        str(user["_id"]),
        user["email"],
        user.get("role", "customer"),
        is_premium_active(user),
    )
    return TokenResponse(access_token=token, user=profile(user))


@app.get("/auth/profile")
def get_profile(current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    user = db[USERS].find_one({"_id": to_obj_id(current_user.id)})
    if not user:
        raise NotFound("User not found")
    return profile(user)


@app.put("/auth/profile")
def update_profile(payload: UpdateProfileRequest, current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    uid = to_obj_id(current_user.id)
    update: Dict[str, Any] = {}
    if payload.username:
        if db[USERS].count_documents({"username": payload.username, "_id": {"$ne": uid}}) > 0:
            raise Conflict("Username already taken")
        update["username"] = payload.username
    if payload.email:
        if db[USERS].count_documents({"email": payload.email, "_id": {"$ne": uid}}) > 0:
            raise Conflict("Email already taken")
        update["email"] = payload.email
    if not update:
        raise ValidationError("No fields to update")
    update["updated_at"] = now_utc()
    try:
        res = db[USERS].update_one({"_id": uid}, {"$set": update})
    except DuplicateKeyError:
        raise Conflict("Username or email already taken")
    if res.matched_count == 0:
        raise NotFound("User not found")
    return {"message": "Profile updated successfully"}


# Catalog Routes
@app.get("/books")
def list_books(search: Optional[str] = Query(None), db: Database = Depends(get_db)):
    return catalog.list_books(db, search)


@app.get("/books/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db)):
    return catalog.get_book(db, book_id)


@app.get("/digital-books")
def list_digital_books(db: Database = Depends(get_db)):
    return library.list_available_digital_books(db)


@app.post("/admin/books", status_code=201)
def create_book(payload: Book, staff: CurrentUser = Depends(staff_only), db: Database = Depends(get_db)):
    book_id = catalog.create_book(db, payload)
    return {"message": "Book created successfully", "book_id": book_id}


@app.put("/admin/books/{book_id}")
def update_book(book_id: str, payload: UpdateBookRequest, staff: CurrentUser = Depends(staff_only), db: Database = Depends(get_db)):
    catalog.update_book(db, book_id, payload)
    return {"message": "Book updated successfully"}


@app.delete("/admin/books/{book_id}")
def delete_book(book_id: str, staff: CurrentUser = Depends(staff_only), db: Database = Depends(get_db)):
    catalog.delete_book(db, book_id)
    return {"message": "Book deleted successfully"}


# Order Routes
@app.post("/orders", status_code=201)
def create_order(payload: CreateOrderRequest, current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.create_order(db, current_user, payload)


@app.get("/orders")
def list_my_orders(current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.list_orders(db, current_user.id)


@app.get("/orders/{order_id}")
def get_order(order_id: str, current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.get_order(db, order_id, current_user)


@app.delete("/orders/{order_id}")
def cancel_order(order_id: str, current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    orders.cancel_order(db, order_id, current_user)
    return {"message": "Order cancelled successfully"}


# Library Routes
@app.get("/library")
def personal_library(current_user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return library.get_personal_library(db, current_user.id)


@app.get("/library/{book_id}")
def book_access(
    book_id: str,
    format_type: Optional[str] = Query(None, alias="format", pattern="^(physical|digital|both)$"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    return library.get_access(db, current_user.id, book_id, format_type)


# Admin Routes
@app.get("/admin/stats")
def admin_stats(admin_user: CurrentUser = Depends(admin_only), db: Database = Depends(get_db)):
    return admin.get_stats(db)


@app.get("/admin/users")
def admin_list_users(staff: CurrentUser = Depends(staff_only), db: Database = Depends(get_db)):
    return admin.list_users(db)


@app.get("/admin/users/{user_id}")
def admin_get_user(user_id: str, staff: CurrentUser = Depends(staff_only), db: Database = Depends(get_db)):
    return admin.get_user(db, user_id)


@app.put("/admin/users/{user_id}/role")
def admin_update_role(user_id: str, payload: UpdateRoleRequest, admin_user: CurrentUser = Depends(admin_only), db: Database = Depends(get_db)):
    admin.update_role(db, user_id, payload.role)
    return {"message": "User role updated successfully"}


@app.put("/admin/users/{user_id}/deactivate")
def admin_deactivate_user(user_id: str, admin_user: CurrentUser = Depends(admin_only), db: Database = Depends(get_db)):
    admin.deactivate_user(db, user_id)
    return {"message": "User deactivated"}


@app.put("/admin/users/{user_id}/premium")
def admin_grant_premium(user_id: str, payload: GrantPremiumRequest, admin_user: CurrentUser = Depends(admin_only), db: Database = Depends(get_db)):
    premium_until = admin.grant_premium(db, user_id, payload.days)
    return {"message": "User upgraded to premium", "premium_until": premium_until}


@app.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin_user: CurrentUser = Depends(admin_only), db: Database = Depends(get_db)):
    admin.delete_user(db, user_id, admin_user.id)
    return {"message": "User deleted successfully"}


@app.get("/admin/orders")
def admin_list_orders(staff: CurrentUser = Depends(staff_only), db: Database = Depends(get_db)):
    return orders.list_orders(db)


@app.put("/admin/orders/{order_id}")
def admin_update_order_status(order_id: str, payload: UpdateOrderStatusRequest, admin_user: CurrentUser = Depends(admin_only), db: Database = Depends(get_db)):
    orders.update_order_status(db, order_id, payload.status)
    return {"message": "Order status updated successfully"}


@app.put("/admin/orders/{order_id}/delivery")
def admin_update_delivery(order_id: str, payload: UpdateDeliveryRequest, admin_user: CurrentUser = Depends(admin_only), db: Database = Depends(get_db)):
    orders.update_delivery(db, order_id, payload.delivery_status, payload.delivery_address)
    return {"message": "Delivery status updated successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
