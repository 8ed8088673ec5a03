import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ["DATABASE_URL"] = ""
os.environ["DATABASE_NAME"] = ""

from types import SimpleNamespace

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import catalog
import database
from main import app
from schemas import MenuItemCreate, RegisterRequest, Role, StallCreate
from storage import ImageFile, ObjectStore, get_object_store

PASSWORD = "secret123"


class FakeObjectStore(ObjectStore):
    """In-memory object store that records deletes and can be told to fail."""

    def __init__(self, base_url="http://testserver"):
        self.base_url = base_url
        self.objects = {}
        self.deleted = []
        self.fail_uploads = False
        self.fail_deletes = False

    def upload(self, path, data, content_type):
        if self.fail_uploads:
            raise RuntimeError("object store unavailable")
        self.objects[path] = (data, content_type)
        return self.public_url(path)

    def delete(self, path):
        if self.fail_deletes:
            raise RuntimeError("object store unavailable")
        self.deleted.append(path)
        self.objects.pop(path, None)

    def open(self, path):
        if path not in self.objects:
            return None
        data, content_type = self.objects[path]
        return SimpleNamespace(metadata={"content_type": content_type}, read=lambda: data)


def png(name="photo.png", size=64):
    return (name, b"\x89PNG\r\n" + b"0" * size, "image/png")


def image_file(name="photo.png"):
    filename, data, content_type = png(name)
    return ImageFile(filename=filename, content_type=content_type, data=data)


@pytest.fixture(autouse=True)
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["food_court_test"]
    monkeypatch.setattr(database, "db", test_db)
    database.ensure_indexes()
    yield test_db


@pytest.fixture
def store():
    fake = FakeObjectStore()
    app.dependency_overrides[get_object_store] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_object_store, None)


@pytest.fixture
def client(store):
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def make_user():
    def _make(username="buyer", role=Role.USER):
        payload = RegisterRequest(
            username=username,
            email=f"{username}@kantin.id",
            password=PASSWORD,
            confirm_password=PASSWORD,
        )
        user = auth._create_user(payload, role)
        token = auth.create_token(user)
        return SimpleNamespace(
            id=str(user["_id"]),
            username=user["username"],
            headers={"Authorization": f"Bearer {token}"},
        )

    return _make


@pytest.fixture
def make_stall(store):
    def _make(owner_id, name="Warung Bu Sri", category="Indonesian Food", food_types=("Rice", "Chicken")):
        payload = StallCreate(
            name=name,
            description="Home cooked Indonesian dishes",
            category=category,
            food_types=list(food_types),
        )
        return catalog.create_stall(owner_id, payload, image_file("stall.png"), image_file("qris.png"), store)

    return _make


@pytest.fixture
def make_menu_item(store):
    def _make(stall_id, name="Nasi Goreng", price=15000, is_available=True):
        payload = MenuItemCreate(
            name=name,
            description="Fried rice with egg and chicken",
            category=["Rice"],
            price=price,
            is_available=is_available,
        )
        return catalog.create_menu_item(stall_id, payload, image_file("menu.png"), store)

    return _make


@pytest.fixture
def shop(make_user, make_stall, make_menu_item):
    """A buyer, a stall owner with one stall and a 15000 menu item."""
    buyer = make_user("buyer")
    owner = make_user("owner", Role.STALL_OWNER)
    stall = make_stall(owner.id)
    item = make_menu_item(stall["id"])
    return SimpleNamespace(buyer=buyer, owner=owner, stall=stall, item=item)


@pytest.fixture
def place_order(client, shop):
    def _place(quantity=2, delivery_method="pickup", buyer=None, item=None):
        buyer = buyer or shop.buyer
        item = item or shop.item
        res = client.post(
            "/api/cart/items",
            json={"menu_item_id": item["id"], "quantity": quantity},
            headers=buyer.headers,
        )
        assert res.status_code == 200, res.json()
        res = client.post(
            "/api/orders/checkout",
            data={"delivery_method": delivery_method},
            files={"proof": png("proof.png")},
            headers=buyer.headers,
        )
        assert res.status_code == 201, res.json()
        return res.json()["data"]

    return _place


@pytest.fixture
def advance(client, shop):
    def _advance(order_id, *actions, owner=None):
        owner = owner or shop.owner
        res = None
        for action in actions:
            res = client.patch(f"/api/orders/my-stall/orders/{order_id}/{action}", headers=owner.headers)
            assert res.status_code == 200, res.json()
        return res.json()["data"] if res is not None else None

    return _advance
