from dataclasses import replace

import pytest


def _login(client, email, *, customer=False):
    path = "/auth/customer/login" if customer else "/auth/login"
    r = client.post(path, json={"email": email, "password": "pw"})
    assert r.status_code == 200, r.json
    return {"X-CSRF-Token": client.get("/csrf").json["csrf_token"]}


@pytest.fixture()
def staff(client):
    return _login(client, "admin@example.com")


@pytest.fixture()
def seeded_list(client, staff):
    r = client.post("/admin/lists", json={"name": "Spring order", "customer_id": 1}, headers=staff)
    assert r.status_code == 201
    list_id = r.json["id"]
    r = client.post(f"/admin/lists/{list_id}/items", json={"item_key": "1", "quantity": 20}, headers=staff)
    assert r.status_code == 201
    return list_id, r.json["item"]


def test_create_list_assigns_number_and_logs_item_added(client, staff, seeded_list):
    list_id, item = seeded_list
    assert item["article_name"] == "Widget"
    assert item["quantity"] == 20
    assert item["deliveries"]["2024-03"]["quantity"] == 12

    detail = client.get(f"/admin/lists/{list_id}").json
    assert detail["list_number"] == "ACME-1"
    assert detail["activity_logs"][0]["action"] == "ITEM_ADDED"
    assert detail["pending_changes_count"] == 0


def test_add_unknown_item_is_not_found(client, staff, seeded_list):
    list_id, _ = seeded_list
    r = client.post(f"/admin/lists/{list_id}/items", json={"item_key": "999"}, headers=staff)
    assert r.status_code == 404


def test_customer_edit_is_pending_until_staff_acknowledges(client, app, seeded_list):
    list_id, item = seeded_list

    cust = _login(client, "buyer@acme.test", customer=True)
    r = client.put(f"/admin/lists/items/{item['id']}", json={"quantity": 25, "comment": "more please"}, headers=cust)
    assert r.status_code == 200
    assert r.json["changed_fields"] == ["quantity", "comment"]

    r = client.get(f"/admin/lists/{list_id}/unacknowledged")
    assert r.json["count"] == 2
    assert {e["approval_state"] for e in r.json["entries"]} == {"pending"}

    # customers cannot acknowledge their own edits
    r = client.put(f"/admin/lists/{list_id}/acknowledge", json={}, headers=cust)
    assert r.status_code == 403

    staff = _login(client, "admin@example.com")
    detail = client.get(f"/admin/lists/{list_id}").json
    assert detail["items"][0]["highlighted_fields"] == ["comment", "quantity"]

    summary = client.get("/admin/lists/pending-changes").json["lists"]
    assert summary[0]["list_id"] == list_id
    assert summary[0]["pending_count"] == 2

    r = client.put(f"/admin/lists/{list_id}/acknowledge", json={}, headers=staff)
    assert r.json == {"acknowledged_count": 2}
    r = client.put(f"/admin/lists/{list_id}/acknowledge", json={}, headers=staff)
    assert r.json == {"acknowledged_count": 0}

    detail = client.get(f"/admin/lists/{list_id}").json
    assert detail["pending_changes_count"] == 0
    assert detail["items"][0]["has_pending_changes"] is False


def test_customer_cannot_see_other_customers_list(client, seeded_list):
    list_id, _ = seeded_list
    _login(client, "buyer@globex.test", customer=True)
    assert client.get(f"/admin/lists/{list_id}").status_code == 403
    assert client.get("/admin/lists").json["lists"] == []
    assert client.get("/admin/customers/1/deliveries").status_code == 403


def test_customer_creates_list_for_itself(client):
    cust = _login(client, "buyer@globex.test", customer=True)
    r = client.post("/admin/lists", json={"name": "Mine", "customer_id": 1}, headers=cust)
    assert r.status_code == 201
    assert r.json["customer_id"] == 2
    assert r.json["list_number"] == "GLOB-1"


def test_delivery_edit_and_reject(client, seeded_list):
    list_id, item = seeded_list
    cust = _login(client, "buyer@acme.test", customer=True)
    r = client.put(
        f"/admin/lists/items/{item['id']}/deliveries/2024-03",
        json={"remark": "dock 2"},
        headers=cust,
    )
    assert r.status_code == 200
    assert r.json["delivery"]["remark"] == "dock 2"

    r = client.put(f"/admin/lists/items/{item['id']}/deliveries/2024-13", json={"remark": "x"}, headers=cust)
    assert r.status_code == 400

    staff = _login(client, "admin@example.com")
    (entry,) = client.get(f"/admin/lists/{list_id}/unacknowledged").json["entries"]
    assert entry["field"] == "delivery.2024-03.remark"

    r = client.put(f"/admin/lists/{list_id}/logs/{entry['id']}/reject", json={}, headers=staff)
    assert r.status_code == 400
    r = client.put(f"/admin/lists/{list_id}/logs/{entry['id']}/reject", json={"reason": "no dock 2"}, headers=staff)
    assert r.status_code == 200
    assert r.json["entry"]["approval_state"] == "rejected"


def test_bulk_acknowledge(client, seeded_list):
    list_id, item = seeded_list
    cust = _login(client, "buyer@acme.test", customer=True)
    client.put(f"/admin/lists/items/{item['id']}", json={"marked": True}, headers=cust)

    staff = _login(client, "admin@example.com")
    r = client.put("/admin/lists/bulk-acknowledge", json={"list_ids": [list_id, "missing"]}, headers=staff)
    assert r.status_code == 200
    results = {row["list_id"]: row for row in r.json["results"]}
    assert results[list_id]["acknowledged_count"] == 1
    assert results["missing"]["ok"] is False


def test_duplicate_and_delete(client, staff, seeded_list):
    list_id, item = seeded_list
    r = client.post(f"/admin/lists/{list_id}/duplicate", headers=staff)
    assert r.status_code == 201
    copy = r.json
    assert copy["name"] == "Spring order (Copy)"
    assert copy["status"] == "drafted"
    assert copy["list_number"] == "ACME-2"
    assert [i["item_key"] for i in copy["items"]] == ["1"]

    r = client.delete(f"/admin/lists/items/{item['id']}", headers=staff)
    assert r.status_code == 200
    detail = client.get(f"/admin/lists/{list_id}").json
    assert detail["items"] == []
    assert detail["activity_logs"][0]["action"] == "ITEM_DELETED"

    assert client.delete(f"/admin/lists/{copy['id']}", headers=staff).status_code == 200
    assert client.get(f"/admin/lists/{copy['id']}").status_code == 404


def test_search_requires_two_characters(client, staff):
    assert client.get("/admin/lists/items/search?q=w").status_code == 400
    r = client.get("/admin/lists/items/search?q=wid")
    assert [i["item_key"] for i in r.json["items"]] == ["1"]


def test_manual_refresh_run(client, app, staff, seeded_list):
    list_id, item = seeded_list
    snapshots = app.extensions["mis_source"].snapshots
    snapshots["1"] = replace(snapshots["1"], article_name="Widget v2")

    r = client.post("/admin/lists/refresh/run", headers=staff)
    assert r.status_code == 200
    assert r.json["refreshed"] == 1

    detail = client.get(f"/admin/lists/{list_id}").json
    assert detail["items"][0]["article_name"] == "Widget v2"
    assert detail["items"][0]["quantity"] == 20

    status = client.get("/admin/lists/refresh/status").json
    assert status["recent_runs"][0]["refreshed"] == 1


def test_refresh_requires_staff_permission(client, seeded_list):
    cust = _login(client, "buyer@acme.test", customer=True)
    assert client.post("/admin/lists/refresh/run", headers=cust).status_code == 401
    viewer = _login(client, "viewer@example.com")
    assert client.post("/admin/lists/refresh/run", headers=viewer).status_code == 403
