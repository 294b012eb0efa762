import pytest
from fastapi import HTTPException
from pymongo.errors import PyMongoError

import orders
import shop
from conftest import login_headers, signup


def add(client, headers, book_id, quantity):
    response = client.patch("/shop/add", headers=headers, json={"book_id": book_id, "quantity": quantity})
    assert response.status_code in (200, 201), response.text
    return response


def stock_of(client, headers, book_id):
    return client.get(f"/books/{book_id}", headers=headers).json()["book"]["stock"]


def test_checkout_empty_bag(client, customer_headers):
    response = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    assert response.status_code == 400


def test_checkout_requires_address(client, customer_headers, make_book):
    add(client, customer_headers, make_book(), 1)
    response = client.post("/order/checkout", headers=customer_headers, json={"address": "   "})
    assert response.status_code == 400
    assert response.json()["detail"] == "Please enter address"


def test_checkout_places_order(client, db, customer_headers, make_book):
    dune = make_book(title="Dune", price=10.0, stock=5)
    emma = make_book(title="Emma", price=7.5, stock=3)
    add(client, customer_headers, dune, 2)
    add(client, customer_headers, emma, 3)

    response = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    assert response.status_code == 201
    order = response.json()["order"]

    assert order["status"] == "PROCESSING"
    assert order["payment"] == "COD"
    assert order["total"] == sum(line["subtotal"] for line in order["books"]) == 42.5
    assert [(line["title"], line["quantity"]) for line in order["books"]] == [("Dune", 2), ("Emma", 3)]

    assert stock_of(client, customer_headers, dune) == 3
    assert stock_of(client, customer_headers, emma) == 0


def test_checkout_closes_bag_and_opens_new_one(client, db, customer_headers, make_book):
    add(client, customer_headers, make_book(), 1)
    old_bag = client.get("/shop", headers=customer_headers).json()
    client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})

    new_bag = client.get("/shop", headers=customer_headers).json()
    assert new_bag["id"] != old_bag["id"]
    assert new_bag["books"] == []
    assert new_bag["total"] == 0
    assert db["shoppingbag"].find_one({"user_id": old_bag["user_id"], "status": "CLOSED"}) is not None


def test_checkout_updates_profile(client, customer_headers, make_book):
    book_id = make_book(stock=10)
    for _ in range(2):
        add(client, customer_headers, book_id, 1)
        client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    add(client, customer_headers, book_id, 1)
    client.post("/order/checkout", headers=customer_headers, json={"address": "2 Side St"})

    profile = client.get("/user/profile", headers=customer_headers).json()
    assert len(profile["orders"]) == 3
    assert profile["addresses"] == ["1 Main St", "2 Side St"]


def test_checkout_insufficient_stock_restores_earlier_lines(client, admin_headers, customer_headers, make_book):
    dune = make_book(title="Dune", stock=5)
    emma = make_book(title="Emma", stock=2)
    add(client, customer_headers, dune, 2)
    add(client, customer_headers, emma, 2)
    # stock sold elsewhere after the book went into the bag
    client.patch(f"/books/{emma}/stock", params={"delta": -1}, headers=admin_headers)

    response = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Emma stock is less than requested quantity"

    assert stock_of(client, customer_headers, dune) == 5
    assert stock_of(client, customer_headers, emma) == 1
    bag = client.get("/shop", headers=customer_headers).json()
    assert len(bag["books"]) == 2


def test_order_visibility(client, admin_headers, customer_headers, make_book):
    add(client, customer_headers, make_book(), 1)
    order_id = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"}).json()["order"]["id"]

    assert client.get(f"/order/{order_id}", headers=customer_headers).status_code == 200
    assert client.get(f"/order/{order_id}", headers=admin_headers).status_code == 200

    signup(client, "other@books.com", phone="9123456789")
    other = login_headers(client, "other@books.com")
    assert client.get(f"/order/{order_id}", headers=other).status_code == 404


def test_my_orders_and_admin_list(client, admin_headers, customer_headers, make_book):
    add(client, customer_headers, make_book(), 1)
    client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St", "payment": "UPI"})

    mine = client.get("/order/mine", headers=customer_headers).json()
    assert len(mine) == 1
    assert mine[0]["payment"] == "UPI"

    assert client.get("/order", headers=customer_headers).status_code == 401
    listing = client.get("/order", headers=admin_headers).json()
    assert listing["count"] == 1


def test_admin_patches_order_status(client, admin_headers, customer_headers, make_book):
    add(client, customer_headers, make_book(), 1)
    order_id = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"}).json()["order"]["id"]

    response = client.patch(f"/order/{order_id}", headers=admin_headers, json={"status": "COMPLETED"})
    assert response.status_code == 200
    assert response.json()["order"]["status"] == "COMPLETED"

    response = client.patch(f"/order/{order_id}", headers=admin_headers, json={"status": "LOST"})
    assert response.status_code == 422


def test_admin_dashboard(client, admin_headers, customer_headers, make_book):
    make_book(title="Rare", stock=1)
    common = make_book(title="Common", price=3.0, stock=20)
    add(client, customer_headers, common, 2)
    client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})

    dashboard = client.get("/admin/dashboard", headers=admin_headers).json()
    assert dashboard["stats"]["total_orders"] == 1
    assert dashboard["stats"]["total_revenue"] == 6.0
    assert dashboard["stats"]["processing_orders"] == 1
    assert [b["title"] for b in dashboard["low_stock_books"]] == ["Rare"]
    assert len(dashboard["recent_orders"]) == 1


def test_checkout_without_bag(db):
    with pytest.raises(HTTPException) as exc:
        orders.checkout(db, "nobody", "1 Main St")
    assert exc.value.status_code == 404


def test_admin_low_stock_endpoint(client, admin_headers, customer_headers, make_book):
    make_book(title="Two left", stock=2)
    make_book(title="Eight left", stock=8)
    make_book(title="Thirty left", stock=30)

    books = client.get("/admin/low-stock", params={"threshold": 10}, headers=admin_headers).json()
    assert [b["title"] for b in books] == ["Two left", "Eight left"]
    assert client.get("/admin/low-stock", headers=customer_headers).status_code == 401


def reader_id(db):
    return str(db["user"].find_one({"email": "reader@books.com"})["_id"])


def test_checkout_refuses_bag_changed_after_read(client, db, monkeypatch, customer_headers, make_book):
    dune = make_book(title="Dune", stock=5)
    emma = make_book(title="Emma", stock=5)
    add(client, customer_headers, dune, 1)
    uid = reader_id(db)
    real_claim = orders._claim_bag

    def add_then_claim(db_, bag):
        # the bag changes between checkout reading it and closing it
        shop.add_to_bag(db_, uid, emma, 2)
        return real_claim(db_, bag)

    monkeypatch.setattr(orders, "_claim_bag", add_then_claim)
    response = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    assert response.status_code == 409

    assert db["order"].count_documents({}) == 0
    assert stock_of(client, customer_headers, dune) == 5
    bag = client.get("/shop", headers=customer_headers).json()
    assert [(line["book_id"], line["quantity"]) for line in bag["books"]] == [(dune, 1), (emma, 2)]


def test_add_during_checkout_lands_in_next_bag(client, db, monkeypatch, customer_headers, make_book):
    dune = make_book(title="Dune", stock=5)
    emma = make_book(title="Emma", stock=5)
    add(client, customer_headers, dune, 1)
    uid = reader_id(db)
    real_take = orders._take_stock
    added = []

    def take_after_add(db_, book_id, quantity):
        if not added:
            added.append(shop.add_to_bag(db_, uid, emma, 2))
        return real_take(db_, book_id, quantity)

    monkeypatch.setattr(orders, "_take_stock", take_after_add)
    response = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    assert response.status_code == 201
    assert [line["title"] for line in response.json()["order"]["books"]] == ["Dune"]

    assert db["shoppingbag"].count_documents({"user_id": uid, "status": "OPEN"}) == 1
    bag = client.get("/shop", headers=customer_headers).json()
    assert [(line["book_id"], line["quantity"]) for line in bag["books"]] == [(emma, 2)]


def test_concurrent_checkouts_place_one_order(client, db, monkeypatch, customer_headers, make_book):
    dune = make_book(title="Dune", stock=5)
    add(client, customer_headers, dune, 2)
    uid = reader_id(db)
    real_claim = orders._claim_bag
    raced = []

    def other_checkout_first(db_, bag):
        if not raced:
            raced.append(orders.checkout(db_, uid, "1 Main St"))
        return real_claim(db_, bag)

    monkeypatch.setattr(orders, "_claim_bag", other_checkout_first)
    response = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    assert response.status_code == 409

    assert db["order"].count_documents({}) == 1
    assert db["shoppingbag"].count_documents({"user_id": uid, "status": "OPEN"}) == 1
    assert stock_of(client, customer_headers, dune) == 3


def test_failed_order_insert_restores_stock_and_bag(client, db, monkeypatch, customer_headers, make_book):
    dune = make_book(title="Dune", stock=5)
    emma = make_book(title="Emma", stock=5)
    add(client, customer_headers, dune, 2)
    add(client, customer_headers, emma, 1)
    uid = reader_id(db)
    real_create = orders.create_document

    def failing_create(db_, collection_name, data):
        if collection_name == "order":
            raise PyMongoError("write failed")
        return real_create(db_, collection_name, data)

    monkeypatch.setattr(orders, "create_document", failing_create)
    response = client.post("/order/checkout", headers=customer_headers, json={"address": "1 Main St"})
    assert response.status_code == 500
    assert response.json() == {"error": {"message": "write failed"}}

    assert stock_of(client, customer_headers, dune) == 5
    assert stock_of(client, customer_headers, emma) == 5
    assert db["shoppingbag"].count_documents({"user_id": uid, "status": "OPEN"}) == 1
    bag = client.get("/shop", headers=customer_headers).json()
    assert len(bag["books"]) == 2
    assert bag["total"] == 30.0
