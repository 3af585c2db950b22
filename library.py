from typing import Dict, List, Optional

from pymongo.database import Database

from database import BOOKS, DIGITAL_ACCESS, as_utc, now_utc, to_obj_id
from errors import AccessExpired, NotFound
from schemas import DIGITAL_FORMATS


def _is_live(access: Dict, now) -> bool:
    expiry = as_utc(access.get("expiry_date"))
    return expiry is None or expiry > now


def _books_by_id(db: Database, book_ids) -> Dict[str, Dict]:
    oids = [to_obj_id(b, "book id") for b in set(book_ids)]
    if not oids:
        return {}
    return {str(b["_id"]): b for b in db[BOOKS].find({"_id": {"$in": oids}}, {"title": 1, "author": 1})}


def get_personal_library(db: Database, user_id: str) -> Dict:
    now = now_utc()
    grants = [a for a in db[DIGITAL_ACCESS].find({"user_id": user_id}) if _is_live(a, now)]
    books = _books_by_id(db, [a["book_id"] for a in grants])
    items: List[Dict] = []
    for access in grants:
        book = books.get(access["book_id"])
        if not book:
            # book removed from the catalog since purchase
            continue
        items.append({
            "id": str(access["_id"]),
            "book_id": access["book_id"],
            "book_title": book.get("title", ""),
            "book_author": book.get("author", ""),
            "format": access.get("format_type"),
            "access_url": access.get("access_url", ""),
            "access_granted_date": access.get("access_granted_date"),
            "expiry_date": access.get("expiry_date"),
        })
    return {"user_id": user_id, "books": items}


def get_access(db: Database, user_id: str, book_id: str, format_type: Optional[str] = None) -> Dict:
    q = {"user_id": user_id, "book_id": book_id}
    if format_type:
        q["format_type"] = format_type
    grants = list(db[DIGITAL_ACCESS].find(q))
    if not grants:
        raise NotFound("Access not found")
    now = now_utc()
    live = [a for a in grants if _is_live(a, now)]
    if not live:
        raise AccessExpired("Access has expired")
    access = max(live, key=lambda a: as_utc(a["access_granted_date"]))
    return {
        "id": str(access["_id"]),
        "book_id": access["book_id"],
        "format": access.get("format_type"),
        "access_url": access.get("access_url", ""),
        "access_date": access.get("access_granted_date"),
        "expiry_date": access.get("expiry_date"),
    }


def list_available_digital_books(db: Database) -> List[Dict]:
    q = {"formats": {"$elemMatch": {"type": {"$in": list(DIGITAL_FORMATS)}, "stock_quantity": {"$gt": 0}}}}
    results = []
    for book in db[BOOKS].find(q):
        for fmt in book.get("formats", []):
            if fmt.get("type") not in DIGITAL_FORMATS or fmt.get("stock_quantity", 0) <= 0:
                continue
            results.append({
                "book_id": str(book["_id"]),
                "title": book.get("title"),
                "author": book.get("author"),
                "type": fmt["type"],
                "price": fmt.get("price"),
                "stock_quantity": fmt.get("stock_quantity"),
            })
    return results
