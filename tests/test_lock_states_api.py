import asyncio

from fastapi.testclient import TestClient

import coursecopy.main as coursecopy_main
from coursecopy.services.storage import DocumentStore


TREE = [
    {"name": "Algebra", "chapters": [
        {"name": "Basics", "topics": [{"name": "Sets"}, {"name": "Maps"}, {"name": "Relations"}]},
        {"name": "Advanced"},
    ]},
    {"name": "Geometry"},
    {"name": "Calculus"},
]


def _client(monkeypatch, store: DocumentStore) -> TestClient:
    monkeypatch.setattr(coursecopy_main, "_get_store", lambda: store)
    return TestClient(coursecopy_main.app)


def _states(client: TestClient) -> dict:
    response = client.get("/api/locks/state?courseId=c1&batchId=b1")
    return {state["itemId"]: state["status"] for state in response.json()["states"]}


def test_set_active_with_auto_lock_locks_siblings(monkeypatch, store, seed):
    ids = seed("c1", TREE)
    algebra, geometry, calculus = ids["subject:Algebra"], ids["subject:Geometry"], ids["subject:Calculus"]

    with _client(monkeypatch, store) as client:
        response = client.post("/api/locks/apply", json={
            "courseId": "c1",
            "batchId": "b1",
            "actions": [{"scope": "subject", "targetId": geometry, "op": "setActive", "autoLockSiblings": True}],
            "idempotencyKey": "c1:b1:subject:setActive",
        })
        states = _states(client)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "changed": 3, "locked": 2, "unlocked": 0, "activeUpdated": 1}
    assert states == {geometry: "active", algebra: "locked", calculus: "locked"}


def test_topic_siblings_stay_within_their_chapter(monkeypatch, store, seed):
    ids = seed("c1", TREE)
    seed("c1", [{"name": "Extra", "chapters": [{"name": "Other", "topics": [{"name": "Elsewhere"}]}]}])

    with _client(monkeypatch, store) as client:
        client.post("/api/locks/apply", json={
            "courseId": "c1",
            "batchId": "b1",
            "actions": [{"scope": "topic", "targetId": ids["topic:Maps"], "op": "setActive", "autoLockSiblings": True}],
        })
        states = _states(client)

    assert states == {
        ids["topic:Maps"]: "active",
        ids["topic:Sets"]: "locked",
        ids["topic:Relations"]: "locked",
    }


def test_repeated_apply_updates_state_in_place(monkeypatch, store, seed):
    ids = seed("c1", TREE)
    chapter = ids["chapter:Basics"]

    with _client(monkeypatch, store) as client:
        for op in ("lock", "unlock"):
            body = {"courseId": "c1", "batchId": "b1", "actions": [
                {"scope": "section", "targetId": chapter, "op": op, "schedule": {"unlockAt": "2030-01-01T00:00:00Z"}},
            ]}
            assert client.post("/api/locks/apply", json=body).status_code == 200
        states = client.get("/api/locks/state?courseId=c1&batchId=b1").json()["states"]

    assert len(states) == 1
    assert states[0]["status"] == "unlocked"
    assert states[0]["scope"] == "section"
    assert states[0]["unlockAt"].startswith("2030-01-01")
    assert asyncio.run(store.count("lock_states")) == 1


def test_dry_run_validates_without_writing(monkeypatch, store, seed):
    ids = seed("c1", TREE)

    with _client(monkeypatch, store) as client:
        response = client.post("/api/locks/apply", json={
            "courseId": "c1",
            "batchId": "b1",
            "dryRun": True,
            "actions": [{"scope": "subject", "targetId": ids["subject:Algebra"], "op": "lock"}],
        })

    assert response.json() == {
        "ok": True, "changed": 0, "locked": 0, "unlocked": 0, "activeUpdated": 0, "dryRun": True,
    }
    assert asyncio.run(store.count("lock_states")) == 0


def test_invalid_requests_are_rejected(monkeypatch, store, seed):
    seed("c1", TREE)
    base = {"courseId": "c1", "batchId": "b1"}

    with _client(monkeypatch, store) as client:
        responses = {
            "ids": client.post("/api/locks/apply", json={"actions": [{"scope": "subject", "targetId": "x", "op": "lock"}]}),
            "empty": client.post("/api/locks/apply", json={**base, "actions": []}),
            "entry": client.post("/api/locks/apply", json={**base, "actions": [{"scope": "subject", "op": "lock"}]}),
            "scope": client.post("/api/locks/apply", json={**base, "actions": [{"scope": "course", "targetId": "x", "op": "lock"}]}),
            "op": client.post("/api/locks/apply", json={**base, "actions": [{"scope": "topic", "targetId": "x", "op": "toggle"}]}),
            "state": client.get("/api/locks/state?courseId=c1"),
        }

    assert {name: r.status_code for name, r in responses.items()} == {name: 400 for name in responses}
    assert responses["scope"].json()["detail"] == "Invalid scope"
    assert responses["op"].json()["detail"] == "Invalid op"
    assert asyncio.run(store.count("lock_states")) == 0


def test_failing_action_writes_nothing(monkeypatch, store, seed):
    ids = seed("c1", TREE)
    real_update = store.update
    calls = []

    async def failing_update(collection, doc_id, patch, txn=None):
        calls.append(doc_id)
        raise RuntimeError("write failed")

    with _client(monkeypatch, store) as client:
        client.post("/api/locks/apply", json={
            "courseId": "c1", "batchId": "b1",
            "actions": [{"scope": "subject", "targetId": ids["subject:Algebra"], "op": "lock"}],
        })
        monkeypatch.setattr(store, "update", failing_update)
        response = client.post("/api/locks/apply", json={
            "courseId": "c1", "batchId": "b1",
            "actions": [
                {"scope": "subject", "targetId": ids["subject:Geometry"], "op": "lock"},
                {"scope": "subject", "targetId": ids["subject:Algebra"], "op": "unlock"},
            ],
        })
        monkeypatch.setattr(store, "update", real_update)
        states = _states(client)

    assert response.status_code == 500
    assert len(calls) == 1
    assert states == {ids["subject:Algebra"]: "locked"}
