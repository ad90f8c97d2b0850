from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from conftest import signup
from notifications import notify


async def post(client, headers, title, type_="info"):
    res = await client.post(
        "/api/notifications",
        headers=headers,
        json={"title": title, "message": f"{title} happened", "type": type_},
    )
    assert res.json()["state"] is True
    return res.json()["notification"]


@pytest.mark.anyio
async def test_create_and_list(client, auth):
    first = await post(client, auth, "First")
    second = await post(client, auth, "Second", "reminder")
    assert first["read"] is False
    assert second["type"] == "reminder"

    res = await client.get("/api/notifications", headers=auth)
    notes = res.json()["notifications"]
    assert sorted(n["title"] for n in notes) == ["First", "Second"]


@pytest.mark.anyio
async def test_list_is_latest_first(client, mongo):
    headers, user, _ = await signup(client)
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    for day in range(3):
        mongo["notification"].insert_one({
            "userId": ObjectId(user["id"]), "title": f"Day {day}", "message": "m",
            "type": "info", "read": False, "timestamp": base + timedelta(days=day),
        })
    notes = (await client.get("/api/notifications", headers=headers)).json()["notifications"]
    assert [n["title"] for n in notes] == ["Day 2", "Day 1", "Day 0"]


@pytest.mark.anyio
async def test_invalid_type_rejected(client, auth):
    res = await client.post("/api/notifications", headers=auth, json={"title": "x", "message": "y", "type": "spam"})
    assert res.status_code == 422


@pytest.mark.anyio
async def test_mark_read_and_read_all(client, auth):
    first = await post(client, auth, "First")
    await post(client, auth, "Second")

    res = await client.patch(f"/api/notifications/{first['id']}/read", headers=auth)
    assert res.json()["notification"]["read"] is True

    res = await client.patch("/api/notifications/read-all", headers=auth)
    assert res.json()["state"] is True
    notes = (await client.get("/api/notifications", headers=auth)).json()["notifications"]
    assert all(n["read"] for n in notes)


@pytest.mark.anyio
async def test_mark_read_other_user(client, auth):
    note = await post(client, auth, "Private")
    other, _, _ = await signup(client)
    res = await client.patch(f"/api/notifications/{note['id']}/read", headers=other)
    assert res.status_code == 404
    assert res.json()["message"] == "Notification not found"


@pytest.mark.anyio
async def test_delete_and_clear(client, auth):
    first = await post(client, auth, "First")
    await post(client, auth, "Second")

    res = await client.delete(f"/api/notifications/{first['id']}", headers=auth)
    assert res.json()["state"] is True
    res = await client.delete(f"/api/notifications/{first['id']}", headers=auth)
    assert res.status_code == 404

    await client.delete("/api/notifications", headers=auth)
    assert (await client.get("/api/notifications", headers=auth)).json()["notifications"] == []


@pytest.mark.anyio
async def test_notify_respects_preferences(client, mongo):
    _, user, _ = await signup(client)
    mongo["user"].update_one({"_id": ObjectId(user["id"])}, {"$set": {"notificationSettings.taskNotifs": False}})

    assert notify(mongo, user["id"], "Task", "muted", "task", setting="taskNotifs") is None
    assert notify(mongo, user["id"], "Profile", "loud", "profile", setting="profileNotifs") is not None
    assert notify(mongo, user["id"], "Bad", "bad type", "carrier-pigeon") is None
    titles = [n["title"] for n in mongo["notification"].find({"userId": ObjectId(user["id"])})]
    assert titles == ["Profile"]
