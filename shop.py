"""
Shopping bag operations.

Each customer has at most one OPEN bag. Line items reference books by id; the
cached ``total`` is adjusted with the book's current price on every change.
Writes are guarded by the bag's ``version`` so two requests racing on the same
bag cannot silently overwrite each other.
"""

import logging
from typing import Tuple

from fastapi import HTTPException
from pymongo import ReturnDocument
from pymongo.database import Database

from database import now, oid
from schemas import ShoppingBag

logger = logging.getLogger(__name__)


def get_open_bag(db: Database, user_id: str) -> dict:
    """Return the user's OPEN bag, inserting an empty one only when none exists."""
    stamp = now()
    fresh = ShoppingBag(user_id=user_id).model_dump(exclude={"user_id", "status"})
    return db["shoppingbag"].find_one_and_update(
        {"user_id": user_id, "status": "OPEN"},
        {"$setOnInsert": {**fresh, "created_at": stamp, "updated_at": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _get_book(db: Database, book_id: str) -> dict:
    book = db["book"].find_one({"_id": oid(book_id)})
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


def _save_bag(db: Database, bag: dict) -> dict:
    version = bag.get("version", 0)
    result = db["shoppingbag"].update_one(
        {"_id": bag["_id"], "version": version},
        {
            "$set": {"books": bag["books"], "total": bag["total"], "updated_at": now()},
            "$inc": {"version": 1},
        },
    )
    if result.matched_count == 0:
        logger.warning(f"Concurrent update detected on bag {bag['_id']}")
        raise HTTPException(status_code=409, detail="Bag was modified concurrently, retry")
    bag["version"] = version + 1
    return bag


def add_to_bag(db: Database, user_id: str, book_id: str, quantity: int) -> Tuple[dict, bool]:
    """Add ``quantity`` copies of a book. Returns the bag and whether a new line was created."""
    if quantity < 1:
        raise HTTPException(status_code=400, detail="Quantity must be at least 1")
    bag = get_open_bag(db, user_id)
    book = _get_book(db, book_id)
    if book.get("status", "ACTIVE") != "ACTIVE":
        raise HTTPException(status_code=400, detail=f"{book['title']} is not available")

    line = next((item for item in bag["books"] if item["book_id"] == book_id), None)
    wanted = quantity + (line["quantity"] if line else 0)
    if book["stock"] < wanted:
        logger.warning(f"Stock not enough for {book['title']}: {book['stock']} < {wanted}")
        raise HTTPException(status_code=400, detail="Stock not enough")

    if line:
        line["quantity"] = wanted
    else:
        bag["books"].append({"book_id": book_id, "quantity": quantity})
    bag["total"] = round(bag["total"] + book["price"] * quantity, 2)
    _save_bag(db, bag)

    logger.info(f"Bag {bag['_id']}: +{quantity} x {book['title']} (total {bag['total']})")
    return bag, line is None


def remove_from_bag(db: Database, user_id: str, book_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise HTTPException(status_code=400, detail="Quantity must be at least 1")
    bag = get_open_bag(db, user_id)
    if not bag["books"]:
        raise HTTPException(status_code=404, detail="No books found in the bag")

    idx = next((i for i, item in enumerate(bag["books"]) if item["book_id"] == book_id), None)
    if idx is None:
        raise HTTPException(status_code=404, detail="Book not found in Cart")

    remaining = bag["books"][idx]["quantity"] - quantity
    if remaining < 0:
        raise HTTPException(
            status_code=406,
            detail="Bag contains lesser books than what is requested to be removed",
        )
    # A book deleted from the catalog can still be taken out of the bag
    book = db["book"].find_one({"_id": oid(book_id)})
    price = book["price"] if book else 0
    if remaining == 0:
        bag["books"].pop(idx)
    else:
        bag["books"][idx]["quantity"] = remaining

    # Price may have changed since the book was added
    bag["total"] = max(round(bag["total"] - price * quantity, 2), 0)
    if not bag["books"]:
        bag["total"] = 0
    _save_bag(db, bag)

    logger.info(f"Bag {bag['_id']}: -{quantity} x {book_id} (total {bag['total']})")
    return bag
