import pytest
from bson import ObjectId

from database import ORDERS, USERS
from tests.conftest import PASSWORD


def test_stats(client, db, make_user, make_book):
    admin = make_user("root", role="admin")
    make_user("mod", role="moderator")
    make_user("vip", premium_days=10)
    make_user("lapsed", premium_days=-1)
    buyer = make_user("buyer")
    book_id = make_book()
    make_book("Emma", "Jane Austen")

    ids = []
    for qty in (1, 2, 3):
        res = client.post("/orders", json={"items": [{"book_id": book_id, "format_type": "digital", "quantity": qty}]},
                          headers=buyer["headers"])
        ids.append(res.json()["order_id"])
    client.put(f"/admin/orders/{ids[0]}", json={"status": "completed"}, headers=admin["headers"])
    client.put(f"/admin/orders/{ids[1]}", json={"status": "completed"}, headers=admin["headers"])
    client.delete(f"/orders/{ids[2]}", headers=buyer["headers"])

    stats = client.get("/admin/stats", headers=admin["headers"]).json()
    assert stats["total_users"] == 5
    assert stats["total_books"] == 2
    assert stats["total_orders"] == 3
    assert stats["premium_users"] == 1
    assert stats["customers"] == 3
    assert stats["moderators"] == 1
    assert stats["admins"] == 1
    assert stats["pending_orders"] == 0
    assert stats["completed_orders"] == 2
    assert stats["cancelled_orders"] == 1
    assert stats["total_revenue"] == pytest.approx(60.0)


def test_stats_is_admin_only(client, make_user):
    mod = make_user("mod", role="moderator")
    assert client.get("/admin/stats", headers=mod["headers"]).status_code == 403


def test_moderator_reads_but_cannot_mutate_users(client, make_user):
    mod = make_user("mod", role="moderator")
    target = make_user("target")

    users = client.get("/admin/users", headers=mod["headers"]).json()
    assert {u["id"] for u in users} == {mod["id"], target["id"]}
    assert all("password_hash" not in u for u in users)
    assert client.get(f"/admin/users/{target['id']}", headers=mod["headers"]).json()["loyalty_level"] == "Bronze"

    res = client.put(f"/admin/users/{target['id']}/role", json={"role": "admin"}, headers=mod["headers"])
    assert res.status_code == 403


def test_role_change(client, db, make_user):
    admin = make_user("root", role="admin")
    target = make_user("target")
    res = client.put(f"/admin/users/{target['id']}/role", json={"role": "moderator"}, headers=admin["headers"])
    assert res.status_code == 200
    assert db[USERS].find_one({"_id": ObjectId(target["id"])})["role"] == "moderator"
    res = client.put(f"/admin/users/{target['id']}/role", json={"role": "owner"}, headers=admin["headers"])
    assert res.status_code == 400


def test_deactivate_blocks_login(client, make_user):
    admin = make_user("root", role="admin")
    target = make_user("target")
    assert client.put(f"/admin/users/{target['id']}/deactivate", headers=admin["headers"]).status_code == 200
    res = client.post("/auth/login", json={"email": target["email"], "password": PASSWORD})
    assert res.status_code == 403


def test_grant_premium(client, make_user, make_book):
    admin = make_user("root", role="admin")
    target = make_user("target")
    res = client.put(f"/admin/users/{target['id']}/premium", json={"days": 30}, headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["premium_until"]
    assert client.get("/auth/profile", headers=target["headers"]).json()["is_premium"] is True

    # premium applies to the next order even with the old token
    book_id = make_book()
    body = client.post("/orders", json={"items": [{"book_id": book_id, "format_type": "physical", "quantity": 1}]},
                       headers=target["headers"]).json()
    assert body["total_amount"] == pytest.approx(45.0)

    assert client.put(f"/admin/users/{target['id']}/premium", json={"days": 0}, headers=admin["headers"]).status_code == 400


@pytest.mark.parametrize("method,path,body", [
    ("put", "/admin/users/{id}/role", {"role": "admin"}),
    ("put", "/admin/users/{id}/deactivate", None),
    ("put", "/admin/users/{id}/premium", {"days": 5}),
    ("delete", "/admin/users/{id}", None),
    ("get", "/admin/users/{id}", None),
])
def test_unknown_user_is_not_found(client, make_user, method, path, body):
    admin = make_user("root", role="admin")
    kwargs = {"headers": admin["headers"]}
    if body is not None:
        kwargs["json"] = body
    res = client.request(method.upper(), path.format(id=ObjectId()), **kwargs)
    assert res.status_code == 404
    assert res.json() == {"error": "User not found"}


def test_delete_user(client, db, make_user):
    admin = make_user("root", role="admin")
    target = make_user("target")
    assert client.delete(f"/admin/users/{admin['id']}", headers=admin["headers"]).status_code == 400
    assert client.delete(f"/admin/users/{target['id']}", headers=admin["headers"]).status_code == 200
    assert db[USERS].count_documents({"_id": ObjectId(target["id"])}) == 0


def test_admin_order_updates_require_admin(client, db, make_user):
    mod = make_user("mod", role="moderator")
    order_id = str(db[ORDERS].insert_one({"user_id": mod["id"], "status": "pending"}).inserted_id)
    res = client.put(f"/admin/orders/{order_id}/delivery", json={"delivery_status": "accepted"}, headers=mod["headers"])
    assert res.status_code == 403


def test_deactivated_and_deleted_tokens_stop_working(client, make_user):
    admin = make_user("root", role="admin")
    target = make_user("target")
    assert client.get("/library", headers=target["headers"]).status_code == 200

    client.put(f"/admin/users/{target['id']}/deactivate", headers=admin["headers"])
    res = client.put("/auth/profile", json={"username": "renamed"}, headers=target["headers"])
    assert res.status_code == 403
    assert res.json() == {"error": "Account is deactivated"}

    client.delete(f"/admin/users/{target['id']}", headers=admin["headers"])
    res = client.get("/library", headers=target["headers"])
    assert res.status_code == 401


def test_demoted_admin_loses_access_with_old_token(client, make_user):
    root = make_user("root", role="admin")
    other = make_user("other", role="admin")
    assert client.get("/admin/stats", headers=other["headers"]).status_code == 200

    client.put(f"/admin/users/{other['id']}/role", json={"role": "customer"}, headers=root["headers"])
    assert client.get("/admin/stats", headers=other["headers"]).status_code == 403
