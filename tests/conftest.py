import os
from datetime import timedelta

os.environ.setdefault("BCRYPT_ROUNDS", "4")

import mongomock
import pytest
from fastapi.testclient import TestClient

import catalog
from auth import create_access_token, hash_password
from database import USERS, create_document, ensure_indexes, get_db, now_utc
from main import app
from schemas import Book, Format, User

PASSWORD = "secret1"


@pytest.fixture
def db():
    database = mongomock.MongoClient().bookstore
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(db):
    def _make(username="reader", role="customer", loyalty_points=0, premium_days=None, is_active=True):
        premium_until = now_utc() + timedelta(days=premium_days) if premium_days is not None else None
        user = User(
            username=username,
            email=f"{username}@bookstore.io",
            password_hash=hash_password(PASSWORD),
            role=role,
            is_premium=premium_days is not None,
            premium_until=premium_until,
            loyalty_points=loyalty_points,
            is_active=is_active,
        )
        uid = create_document(db, USERS, user)
        token = create_access_token(uid, user.email, role, user.is_premium)
        return {"id": uid, "email": user.email, "headers": bearer(token)}
    return _make


@pytest.fixture
def make_book(db):
    def _make(title="Dune", author="Frank Herbert", formats=None, **fields):
        formats = formats or [
            {"type": "physical", "price": 50.0, "stock_quantity": 10},
            {"type": "digital", "price": 20.0, "stock_quantity": 100},
        ]
        book = Book(title=title, author=author, formats=[Format(**f) for f in formats], **fields)
        return catalog.create_book(db, book)
    return _make
