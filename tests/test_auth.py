from datetime import datetime, timedelta, timezone

from jose import jwt
from pymongo.errors import DuplicateKeyError

import auth
import config
import database
from conftest import PASSWORD, png
from schemas import Role


def register_payload(username="siti", **overrides):
    payload = {
        "username": username,
        "email": f"{username}@kantin.id",
        "password": PASSWORD,
        "confirm_password": PASSWORD,
    }
    payload.update(overrides)
    return payload


def test_register_creates_user_with_lowercase_username(client):
    res = client.post("/api/auth/register", json=register_payload("Siti_99"))
    body = res.json()
    assert res.status_code == 201
    assert body["success"] is True
    assert body["status_code"] == 201
    assert body["data"]["username"] == "siti_99"
    assert body["data"]["role"] == "user"
    assert "password_hash" not in body["data"]


def test_register_rejects_duplicate_username_and_email(client):
    client.post("/api/auth/register", json=register_payload("siti"))
    res = client.post("/api/auth/register", json=register_payload("SITI", email="other@kantin.id"))
    assert res.status_code == 409
    res = client.post("/api/auth/register", json=register_payload("budi", email="siti@kantin.id"))
    assert res.status_code == 409


def test_register_validates_fields(client):
    res = client.post("/api/auth/register", json=register_payload("ab", confirm_password="different"))
    body = res.json()
    assert res.status_code == 400
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    assert body["errors"]


def test_login_with_username_or_email(client):
    client.post("/api/auth/register", json=register_payload("siti"))
    for identifier in ("siti", "SITI@kantin.id"):
        res = client.post("/api/auth/login", json={"identifier": identifier, "password": PASSWORD})
        assert res.status_code == 200
        assert res.json()["data"]["token"]

    res = client.post("/api/auth/login", json={"identifier": "siti", "password": "wrong-password"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid email/username or password"
    res = client.post("/api/auth/login", json={"identifier": "nobody", "password": PASSWORD})
    assert res.json()["message"] == "Invalid email/username or password"


def test_me_requires_bearer_token(client):
    assert client.get("/api/auth/me").status_code == 401
    res = client.get("/api/auth/me", headers={"Authorization": "Token abc"})
    assert res.status_code == 401
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.json()["message"] == "Invalid token"


def test_expired_token_is_rejected(client, make_user):
    user = make_user("siti")
    past = datetime.now(timezone.utc) - timedelta(days=1)
    token = jwt.encode({"sub": user.id, "ver": 0, "exp": past}, config.JWT_SECRET, algorithm=config.JWT_ALG)
    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Token has expired"


def test_logout_revokes_issued_tokens(client, make_user):
    user = make_user("siti")
    assert client.get("/api/auth/me", headers=user.headers).status_code == 200
    assert client.post("/api/auth/logout", headers=user.headers).status_code == 200
    res = client.get("/api/auth/me", headers=user.headers)
    assert res.status_code == 401
    assert res.json()["message"] == "Token has been revoked"


def test_first_admin_can_bootstrap_then_admin_is_required(client, make_user):
    res = client.post("/api/auth/register-admin", json=register_payload("root"))
    assert res.status_code == 201
    assert res.json()["data"]["role"] == "admin"

    res = client.post("/api/auth/register-admin", json=register_payload("intruder"))
    assert res.status_code == 403

    buyer = make_user("buyer")
    res = client.post("/api/auth/register-admin", json=register_payload("intruder"), headers=buyer.headers)
    assert res.status_code == 403

    token = client.post("/api/auth/login", json={"identifier": "root", "password": PASSWORD}).json()["data"]["token"]
    res = client.post(
        "/api/auth/register-admin",
        json=register_payload("second"),
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 201


def stall_owner_form(username="pakbudi"):
    return {
        "username": username,
        "email": f"{username}@kantin.id",
        "password": PASSWORD,
        "confirm_password": PASSWORD,
        "stall_name": "Bakso Pak Budi",
        "description": "Meatball soup since 1998",
        "category": "Indonesian Food",
        "food_types": "Soup, Meatball",
    }


def test_admin_registers_stall_owner_with_stall(client, make_user):
    admin = make_user("admin", Role.ADMIN)
    res = client.post(
        "/api/auth/register-stall-owner",
        data=stall_owner_form(),
        files={"stall_image": png("stall.png"), "qris_image": png("qris.png")},
        headers=admin.headers,
    )
    assert res.status_code == 201, res.json()
    data = res.json()["data"]
    assert data["user"]["role"] == "stall_owner"
    assert data["stall"]["owner_id"] == data["user"]["uid"]
    assert data["stall"]["food_types"] == ["Soup", "Meatball"]
    assert data["stall"]["rating"] == 0

    token = client.post("/api/auth/login", json={"identifier": "pakbudi", "password": PASSWORD}).json()["data"]["token"]
    res = client.get("/api/stalls/my-stall", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.json()["data"]["name"] == "Bakso Pak Budi"


def test_register_stall_owner_requires_admin(client, make_user):
    buyer = make_user("buyer")
    res = client.post(
        "/api/auth/register-stall-owner",
        data=stall_owner_form(),
        files={"stall_image": png("stall.png")},
        headers=buyer.headers,
    )
    assert res.status_code == 403


def test_register_stall_owner_without_image_creates_nothing(client, make_user, mongo):
    admin = make_user("admin", Role.ADMIN)
    res = client.post("/api/auth/register-stall-owner", data=stall_owner_form(), headers=admin.headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Image is required"
    assert mongo["users"].find_one({"username": "pakbudi"}) is None


def test_failed_stall_creation_removes_new_owner(client, make_user, store, mongo):
    admin = make_user("admin", Role.ADMIN)
    store.fail_uploads = True
    res = client.post(
        "/api/auth/register-stall-owner",
        data=stall_owner_form(),
        files={"stall_image": png("stall.png")},
        headers=admin.headers,
    )
    assert res.status_code == 500
    assert res.json()["message"] == "Internal server error"
    assert mongo["users"].find_one({"username": "pakbudi"}) is None


def test_update_address_and_profile(client, make_user, store):
    user = make_user("siti")
    res = client.patch(
        "/api/auth/me/address",
        json={"address_name": "Kos Melati", "address_detail": "Jl. Kaliurang km 5"},
        headers=user.headers,
    )
    assert res.status_code == 200
    assert res.json()["data"]["address"]["address_name"] == "Kos Melati"

    res = client.patch(
        "/api/auth/me/profile",
        data={"username": "siti_baru"},
        files={"photo": png("me.png")},
        headers=user.headers,
    )
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["username"] == "siti_baru"
    assert data["photo_url"].startswith("http://testserver/api/files/profile-pictures/")
    assert data["address"]["address_detail"] == "Jl. Kaliurang km 5"


def test_password_change_requires_old_password(client, make_user):
    user = make_user("siti")
    res = client.patch(
        "/api/auth/me/profile",
        data={"old_password": "wrong-one", "new_password": "newsecret"},
        headers=user.headers,
    )
    assert res.status_code == 401

    res = client.patch(
        "/api/auth/me/profile",
        data={"old_password": PASSWORD, "new_password": "newsecret"},
        headers=user.headers,
    )
    assert res.status_code == 200
    res = client.post("/api/auth/login", json={"identifier": "siti", "password": "newsecret"})
    assert res.status_code == 200


def test_profile_username_must_be_unique(client, make_user):
    make_user("taken")
    user = make_user("siti")
    res = client.patch("/api/auth/me/profile", data={"username": "taken"}, headers=user.headers)
    assert res.status_code == 409


def test_failed_profile_write_keeps_old_photo(client, make_user, store, mongo, monkeypatch):
    user = make_user("siti")
    res = client.patch("/api/auth/me/profile", files={"photo": png("old.png")}, headers=user.headers)
    old_url = res.json()["data"]["photo_url"]
    real_update = auth.update_document

    def racing_update(collection_name, doc_id, updates):
        if "username" in updates:
            raise DuplicateKeyError("username taken concurrently")
        return real_update(collection_name, doc_id, updates)

    monkeypatch.setattr(auth, "update_document", racing_update)
    res = client.patch(
        "/api/auth/me/profile",
        data={"username": "siti_baru"},
        files={"photo": png("new.png")},
        headers=user.headers,
    )
    assert res.status_code == 409
    assert mongo["users"].find_one({"_id": user.id})["photo_url"] == old_url
    assert old_url.split("/api/files/")[1] not in store.deleted
    assert len(store.deleted) == 1
    assert store.deleted[0].startswith("profile-pictures/")


def test_role_is_looked_up_per_request(client, make_user, mongo):
    user = make_user("siti")
    assert client.get("/api/cart", headers=user.headers).status_code == 200
    mongo["users"].update_one({"_id": user.id}, {"$set": {"role": Role.STALL_OWNER.value}})
    assert client.get("/api/cart", headers=user.headers).status_code == 403


def test_stall_owner_without_stall_gets_not_found(client, make_user):
    owner = make_user("owner", Role.STALL_OWNER)
    res = client.get("/api/stalls/my-stall", headers=owner.headers)
    assert res.status_code == 404
    assert res.json()["message"] == "You do not own a stall yet"


def test_user_ids_are_strings(make_user):
    user = make_user("siti")
    assert database.get_document("users", user.id)["username"] == "siti"
