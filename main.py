import re
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from email_validator import validate_email, EmailNotValidError
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
import orders
import shop
from database import get_db, ensure_indexes, create_document, oid, now, serialize
from logger import setup_logging, log_startup
from schemas import (
    User, Profile, Author, Book, ShoppingBag,
    BookStatus, OrderStatus, PaymentMode, Role,
    PHONE_REGEX, PASSWORD_REGEX,
)
from security import hash_password, verify_password, create_access_token, get_current_user, require_admin
from stock_watch import ConnectionManager, LowStockWatcher, find_low_stock_books

setup_logging()
logger = logging.getLogger("bookstore")

manager = ConnectionManager()


def _resolve_db() -> Database:
    # Honour dependency overrides outside of a request (startup, watcher)
    return app.dependency_overrides.get(get_db, get_db)()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_startup()
    try:
        ensure_indexes(_resolve_db())
    except PyMongoError as e:
        logger.error(f"Could not create indexes: {e}")
    watcher = None
    if config.LOW_STOCK_INTERVAL_SECONDS > 0:
        watcher = LowStockWatcher(_resolve_db, manager, config.LOW_STOCK_THRESHOLD, config.LOW_STOCK_INTERVAL_SECONDS)
        watcher.start()
    yield
    if watcher:
        await watcher.stop()


app = FastAPI(title="Bookstore API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": {"message": str(exc)}})


# Request models
class SignupRequest(BaseModel):
    name: str
    phone: str
    email: str
    password: str
    role: Role = "CUSTOMER"


class LoginRequest(BaseModel):
    email: str
    password: str


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1)
    author: Optional[str] = None
    author_id: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    status: BookStatus = "ACTIVE"
    image: Optional[str] = None


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    author_id: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    status: Optional[BookStatus] = None
    image: Optional[str] = None

    # Leaving a field out keeps it; an explicit null would erase a required value
    @field_validator("title", "author", "price", "stock", "status")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


class BagChangeRequest(BaseModel):
    book_id: str
    quantity: int = Field(1, ge=1)


class CheckoutRequest(BaseModel):
    address: str
    payment: PaymentMode = "COD"


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role"),
        "status": user.get("status"),
    }


@app.get("/")
def read_root():
    return {"message": "Bookstore API running"}


BOOKSTORE_COLLECTIONS = ("user", "profile", "author", "book", "shoppingbag", "order")


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    """Database health: per-collection counts and the indexes the API relies on."""
    response = {"backend": "running", "database": db.name, "collections": {}}
    try:
        for name in BOOKSTORE_COLLECTIONS:
            response["collections"][name] = {
                "documents": db[name].count_documents({}),
                "indexes": sorted(db[name].index_information()),
            }
        response["open_bags"] = db["shoppingbag"].count_documents({"status": "OPEN"})
        response["low_stock_books"] = len(find_low_stock_books(db, config.LOW_STOCK_THRESHOLD))
        response["connection_status"] = "connected"
    except PyMongoError as e:
        logger.warning(f"Health check failed: {e}")
        response["connection_status"] = f"error: {str(e)[:80]}"
    return response


# Users
@app.post("/user/signup", status_code=201)
def signup(payload: SignupRequest, authorization: Optional[str] = Header(None), db: Database = Depends(get_db)):
    # The first admin bootstraps the store; later admins are created by an admin
    if payload.role == "ADMIN" and db["user"].count_documents({"role": "ADMIN"}) > 0:
        require_admin(get_current_user(authorization, db))

    if db["user"].find_one({"email": payload.email.lower()}):
        raise HTTPException(status_code=400, detail="User already exists")

    field_errors = []
    if not PASSWORD_REGEX.match(payload.password):
        field_errors.append("Password must be at least 8 characters long and alphanumeric")
    try:
        validate_email(payload.email, check_deliverability=False)
    except EmailNotValidError:
        field_errors.append("Enter Valid Email ID")
    if not PHONE_REGEX.match(payload.phone):
        field_errors.append("Enter valid Phone Number of 10 Digits and not starting with zero")
    if field_errors:
        raise HTTPException(status_code=422, detail={"message": "Invalid Data in Fields", "errors": field_errors})

    user_doc = User(
        name=payload.name,
        phone=payload.phone,
        email=payload.email.lower(),
        role=payload.role,
        password_hash=hash_password(payload.password),
    )
    try:
        uid = create_document(db, "user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User already exists")
    logger.info(f"{payload.role} user {user_doc.email} signed up")

    if payload.role == "CUSTOMER":
        profile_id = create_document(db, "profile", Profile(user_id=uid))
        create_document(db, "shoppingbag", ShoppingBag(user_id=uid))
        return {
            "message": "CUSTOMER User has been created",
            "user_id": uid,
            "profile_id": profile_id,
        }
    return {"message": "ADMIN User has been created", "user_id": uid}


@app.post("/user/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid emailId")
    if not verify_password(payload.password, user.get("password_hash", "")):
        logger.warning(f"Wrong password for {payload.email}")
        raise HTTPException(status_code=401, detail="Wrong Password for this Email")
    if user.get("status", "ACTIVE") != "ACTIVE":
        raise HTTPException(status_code=403, detail=f"User is {user['status']}")
    logger.info(f"User {user['email']} logged in")
    return {"message": "Auth Successful", "token": create_access_token(user), "user": public_user(user)}


@app.get("/user/me")
def me(user: dict = Depends(get_current_user)):
    return public_user(user)


@app.get("/user/profile")
def profile(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db["profile"].find_one({"user_id": user["id"]})
    if not doc:
        raise HTTPException(status_code=404, detail="Profile not found")
    return serialize(doc)


# Authors
@app.post("/authors", status_code=201)
def create_author(payload: Author, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    aid = create_document(db, "author", payload)
    logger.info(f"Author {payload.name} created")
    return {"id": aid, **payload.model_dump()}


@app.get("/authors")
def list_authors(db: Database = Depends(get_db)):
    return serialize(list(db["author"].find().sort("name", ASCENDING)))


@app.get("/authors/{author_id}")
def get_author(author_id: str, db: Database = Depends(get_db)):
    author = db["author"].find_one({"_id": oid(author_id)})
    if not author:
        raise HTTPException(status_code=404, detail="Author not found")
    return serialize(author)


def _author_name(db: Database, author_id: str) -> str:
    author = db["author"].find_one({"_id": oid(author_id)})
    if not author:
        raise HTTPException(status_code=404, detail="Author not found")
    return author["name"]


# Books
BOOK_SORTS = {
    "price": [("price", ASCENDING)],
    "-price": [("price", DESCENDING)],
    "author": [("author", ASCENDING)],
}


@app.get("/books")
def list_books(
    page: int = Query(config.BOOK_PAGE_DEFAULT, ge=1),
    limit: int = Query(config.BOOK_LIMIT_DEFAULT, ge=1),
    sort: Optional[str] = None,
    include_inactive: bool = False,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = {}
    if not (include_inactive and user.get("role") == "ADMIN"):
        query["status"] = "ACTIVE"
    cursor = db["book"].find(query)
    if sort in BOOK_SORTS:
        cursor = cursor.sort(BOOK_SORTS[sort])
    books = list(cursor.skip(limit * (page - 1)).limit(limit))
    return {
        "page": page,
        "limit": limit,
        "total": db["book"].count_documents(query),
        "books": serialize(books),
    }


@app.get("/books/search")
def search_books(query: str = Query(..., min_length=1), user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    pattern = {"$regex": re.escape(query), "$options": "i"}
    books = db["book"].find({"status": "ACTIVE", "$or": [{"title": pattern}, {"author": pattern}]}).limit(50)
    return serialize(list(books))


@app.post("/books", status_code=201)
def create_book(payload: BookCreate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    data = payload.model_dump()
    if payload.author_id:
        data["author"] = _author_name(db, payload.author_id)
    if not data.get("author"):
        raise HTTPException(status_code=400, detail="author or author_id is required")
    book = Book(**data)
    bid = create_document(db, "book", book)
    logger.info(f"Book {book.title} added with stock {book.stock}")
    return {"message": "Book Added Successfully in Inventory", "book": {"id": bid, **book.model_dump()}}


@app.get("/books/{book_id}")
def get_book(book_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    book = db["book"].find_one({"_id": oid(book_id)})
    if not book:
        raise HTTPException(status_code=404, detail="Book Not Found")
    return {"book": serialize(book)}


@app.patch("/books/{book_id}")
def update_book(book_id: str, payload: BookUpdate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    if changes.get("author_id"):
        changes["author"] = _author_name(db, changes["author_id"])
    changes["updated_at"] = now()
    _id = oid(book_id)
    result = db["book"].update_one({"_id": _id}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Book Not Found")
    logger.info(f"Book {book_id} updated: {sorted(k for k in changes if k != 'updated_at')}")
    return {"message": "Book updated Successfully", "book": serialize(db["book"].find_one({"_id": _id}))}


@app.patch("/books/{book_id}/stock")
def update_stock(book_id: str, delta: int, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    _id = oid(book_id)
    book = db["book"].find_one({"_id": _id})
    if not book:
        raise HTTPException(status_code=404, detail="Book Not Found")
    # Conditional update so concurrent decrements cannot push stock below zero
    result = db["book"].update_one(
        {"_id": _id, "stock": {"$gte": -delta}},
        {"$inc": {"stock": delta}, "$set": {"updated_at": now()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=400, detail="Stock cannot go below zero")
    book = db["book"].find_one({"_id": _id})
    logger.info(f"Stock of {book['title']} changed by {delta} to {book['stock']}")
    return {"message": "Stock updated", "book": serialize(book)}


@app.delete("/books/{book_id}")
def delete_book(book_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    result = db["book"].delete_one({"_id": oid(book_id)})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Book not Found")
    logger.info(f"Book {book_id} deleted")
    return {"message": "Book deleted successfully"}


# Shopping bag
@app.get("/shop")
def get_bag(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(shop.get_open_bag(db, user["id"]))


@app.patch("/shop/add")
def add_to_bag(payload: BagChangeRequest, response: Response, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    bag, created = shop.add_to_bag(db, user["id"], payload.book_id, payload.quantity)
    if created:
        response.status_code = 201
        return {"message": "Book added in Cart successfully", "bag": serialize(bag)}
    return {"message": "Bag Updated successfully", "bag": serialize(bag)}


@app.patch("/shop/remove")
def remove_from_bag(payload: BagChangeRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    bag = shop.remove_from_bag(db, user["id"], payload.book_id, payload.quantity)
    return {"message": "Bag Updated successfully", "bag": serialize(bag)}


# Orders
@app.post("/order/checkout", status_code=201)
def checkout(payload: CheckoutRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    order = orders.checkout(db, user["id"], payload.address, payload.payment)
    return {"message": "Order Placed Successfully", "order": serialize(order)}


@app.get("/order")
def list_orders(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return serialize(orders.list_orders(db))


@app.get("/order/mine")
def my_orders(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return serialize(orders.list_user_orders(db, user["id"]))


@app.get("/order/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"message": "Order found successfully", "order": serialize(orders.get_order(db, order_id, user))}


@app.patch("/order/{order_id}")
def update_order(order_id: str, payload: OrderStatusUpdate, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    order = orders.update_order_status(db, order_id, payload.status)
    return {"message": "Order updated Successfully", "order": serialize(order)}


# Admin dashboard
def _sum(db: Database, collection: str, field: str) -> float:
    result = list(db[collection].aggregate([
        {"$group": {"_id": None, "total": {"$sum": f"${field}"}}},
    ]))
    return result[0]["total"] if result else 0


@app.get("/admin/dashboard")
def admin_dashboard(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    recent = db["order"].find({}, {"user_id": 1, "total": 1, "status": 1, "created_at": 1}).sort("created_at", DESCENDING).limit(5)
    return {
        "stats": {
            "total_books": db["book"].count_documents({}),
            "total_orders": db["order"].count_documents({}),
            "total_users": db["user"].count_documents({}),
            "out_of_stock_books": db["book"].count_documents({"stock": 0}),
            "total_revenue": round(_sum(db, "order", "total"), 2),
            "processing_orders": db["order"].count_documents({"status": "PROCESSING"}),
            "completed_orders": db["order"].count_documents({"status": "COMPLETED"}),
        },
        "low_stock_books": serialize(find_low_stock_books(db, config.LOW_STOCK_THRESHOLD)),
        "recent_orders": serialize(list(recent)),
    }


@app.get("/admin/low-stock")
def low_stock(
    threshold: int = Query(config.LOW_STOCK_THRESHOLD, ge=1),
    limit: int = Query(20, ge=1),
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    return serialize(find_low_stock_books(db, threshold, limit))


# Restock alerts
@app.websocket("/ws/low-stock")
async def low_stock_socket(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            logger.info(f"Socket message: {data}")
    except WebSocketDisconnect:
        manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
