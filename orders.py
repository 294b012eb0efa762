"""
Checkout and order records.

Checkout turns the user's OPEN bag into an order: stock is re-validated and
taken book by book, the bag is closed and a fresh one opened, and the order is
recorded in the customer's profile.
"""

import logging
from typing import List

from fastapi import HTTPException
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, now, oid
from schemas import Order, OrderItem, Profile
from shop import get_open_bag

logger = logging.getLogger(__name__)


def _take_stock(db: Database, book_id, quantity: int) -> bool:
    # Only decrements when enough stock is left, so stock never goes negative
    result = db["book"].update_one(
        {"_id": book_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": now()}},
    )
    return result.modified_count == 1


def _restore_stock(db: Database, taken: List[tuple]):
    for book_id, quantity in taken:
        db["book"].update_one({"_id": book_id}, {"$inc": {"stock": quantity}})
        logger.info(f"Restored {quantity} units of book {book_id}")


def _claim_bag(db: Database, bag: dict) -> dict:
    """Close the bag, but only if nobody changed or claimed it since it was read."""
    claimed = db["shoppingbag"].find_one_and_update(
        {"_id": bag["_id"], "status": "OPEN", "version": bag.get("version", 0)},
        {"$set": {"status": "CLOSED", "updated_at": now()}, "$inc": {"version": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        logger.warning(f"Checkout lost the race for bag {bag['_id']}")
        raise HTTPException(status_code=409, detail="Bag was modified concurrently, retry")
    return claimed


def _reopen_bag(db: Database, bag: dict):
    # Lines added to a bag opened while checkout held this one are folded back in
    books = [dict(line) for line in bag["books"]]
    total = bag["total"]
    stray = db["shoppingbag"].find_one_and_delete({"user_id": bag["user_id"], "status": "OPEN"})
    if stray:
        for extra in stray["books"]:
            line = next((item for item in books if item["book_id"] == extra["book_id"]), None)
            if line:
                line["quantity"] += extra["quantity"]
            else:
                books.append(extra)
        total += stray["total"]
    db["shoppingbag"].update_one(
        {"_id": bag["_id"]},
        {"$set": {"status": "OPEN", "books": books, "total": round(total, 2), "updated_at": now()},
         "$inc": {"version": 1}},
    )
    logger.info(f"Bag {bag['_id']} reopened after failed checkout")


def _place_order(db: Database, bag: dict, address: str, payment: str, taken: List[tuple]) -> str:
    items = []
    for line in bag["books"]:
        book_id = oid(line["book_id"])
        quantity = line["quantity"]
        book = db["book"].find_one({"_id": book_id})
        if not book:
            raise HTTPException(status_code=404, detail=f"Book {line['book_id']} no longer exists")
        if book["stock"] < quantity or not _take_stock(db, book_id, quantity):
            logger.warning(f"Checkout refused for user {bag['user_id']}: {book['title']} has {book['stock']} left")
            raise HTTPException(
                status_code=400,
                detail=f"{book['title']} stock is less than requested quantity",
            )
        taken.append((book_id, quantity))
        items.append(OrderItem(
            book_id=line["book_id"],
            title=book["title"],
            unit_price=book["price"],
            quantity=quantity,
            subtotal=round(book["price"] * quantity, 2),
        ))

    order = Order(
        user_id=bag["user_id"],
        books=items,
        address=address,
        payment=payment,
        total=round(sum(item.subtotal for item in items), 2),
    )
    return create_document(db, "order", order)


def checkout(db: Database, user_id: str, address: str, payment: str = "COD") -> dict:
    address = (address or "").strip()
    if not address:
        raise HTTPException(status_code=400, detail="Please enter address")

    bag = db["shoppingbag"].find_one({"user_id": user_id, "status": "OPEN"})
    if not bag:
        raise HTTPException(status_code=404, detail="Bag not found for user")
    if not bag.get("books"):
        raise HTTPException(status_code=400, detail="Cart Empty, please add something in cart")

    bag = _claim_bag(db, bag)
    taken = []
    try:
        order_id = _place_order(db, bag, address, payment, taken)
    except Exception:
        # Until the order exists, undo every stock decrement and give the bag back
        _restore_stock(db, taken)
        _reopen_bag(db, bag)
        raise

    get_open_bag(db, user_id)

    if not db["profile"].find_one({"user_id": user_id}):
        create_document(db, "profile", Profile(user_id=user_id))
    db["profile"].update_one(
        {"user_id": user_id},
        {
            "$push": {"orders": order_id},
            "$addToSet": {"addresses": address},
            "$set": {"updated_at": now()},
        },
    )

    logger.info(f"Order {order_id} placed by user {user_id}: {len(bag['books'])} lines")
    return db["order"].find_one({"_id": oid(order_id)})


def list_orders(db: Database) -> dict:
    orders = list(db["order"].find().sort("created_at", DESCENDING))
    return {"count": len(orders), "orders": orders}


def list_user_orders(db: Database, user_id: str) -> List[dict]:
    return list(db["order"].find({"user_id": user_id}).sort("created_at", DESCENDING))


def get_order(db: Database, order_id: str, user: dict) -> dict:
    order = db["order"].find_one({"_id": oid(order_id)})
    # Customers only see their own orders
    if not order or (user.get("role") != "ADMIN" and order["user_id"] != str(user["_id"])):
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def update_order_status(db: Database, order_id: str, status: str) -> dict:
    _id = oid(order_id)
    result = db["order"].update_one({"_id": _id}, {"$set": {"status": status, "updated_at": now()}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info(f"Order {order_id} marked {status}")
    return db["order"].find_one({"_id": _id})
