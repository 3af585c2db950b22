import logging
import re
from typing import Dict, List, Optional

from pymongo.database import Database

from database import BOOKS, create_document, now_utc, sanitize, to_obj_id
from errors import NotFound, ValidationError
from schemas import Book, UpdateBookRequest, check_unique_types

logger = logging.getLogger(__name__)

MAX_RESULTS = 100


def find_format(book: Dict, format_type: str) -> Optional[Dict]:
    for fmt in book.get("formats", []):
        if fmt.get("type") == format_type:
            return fmt
    return None


def list_books(db: Database, search: Optional[str] = None) -> List[Dict]:
    q: Dict = {}
    if search:
        pattern = re.escape(search)
        q = {"$or": [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"author": {"$regex": pattern, "$options": "i"}},
        ]}
    return [sanitize(b) for b in db[BOOKS].find(q).limit(MAX_RESULTS)]


def load_book(db: Database, book_id: str) -> Dict:
    """Raw book document, _id included."""
    book = db[BOOKS].find_one({"_id": to_obj_id(book_id, "book id")})
    if not book:
        raise NotFound("Book not found")
    return book


def get_book(db: Database, book_id: str) -> Dict:
    return sanitize(load_book(db, book_id))


def create_book(db: Database, payload: Book) -> str:
    book_id = create_document(db, BOOKS, payload)
    logger.info("Created book %s (%s)", book_id, payload.title)
    return book_id


def _merge_fields(payload: UpdateBookRequest) -> Dict:
    # empty strings and zero numbers mean "leave unchanged"
    data = {}
    for key, value in payload.model_dump(exclude={"formats"}).items():
        if value is None or value == "" or value == 0:
            continue
        data[key] = value
    if payload.formats:
        check_unique_types(payload.formats)
        data["formats"] = [f.model_dump() for f in payload.formats]
    return data


def update_book(db: Database, book_id: str, payload: UpdateBookRequest) -> None:
    oid = to_obj_id(book_id, "book id")
    try:
        data = _merge_fields(payload)
    except ValueError as exc:
        raise ValidationError(str(exc))
    if not data:
        raise ValidationError("No fields to update")
    data["updated_at"] = now_utc()
    res = db[BOOKS].update_one({"_id": oid}, {"$set": data})
    if res.matched_count == 0:
        raise NotFound("Book not found")
    logger.info("Updated book %s fields=%s", book_id, sorted(data))


def delete_book(db: Database, book_id: str) -> None:
    res = db[BOOKS].delete_one({"_id": to_obj_id(book_id, "book id")})
    if res.deleted_count == 0:
        raise NotFound("Book not found")
    logger.info("Deleted book %s", book_id)
