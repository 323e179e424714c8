"""Tests for thread, message page, summary and context endpoints."""

from sqlmodel import Session

from chatlog.models.summary import Summary
from chatlog.models.thread import ASSISTANT, USER, Thread
from chatlog.services.log_store import LogStore

from tests.conftest import BASE_MS, make_message, test_engine


def _seed_thread(title="Test Chat", messages=0, **config):
    """Insert a thread and ``messages`` alternating messages directly into the test DB."""
    with Session(test_engine) as session:
        thread = Thread(title=title, **config)
        session.add(thread)
        session.commit()
        session.refresh(thread)
        thread_id = thread.id

    log = LogStore(test_engine)
    for i in range(1, messages + 1):
        role = USER if i % 2 else ASSISTANT
        log.append(
            thread_id,
            make_message(f"{thread_id}-m{i}", role, BASE_MS + i * 20_000, thread_id=thread_id),
        )
    return thread_id


def test_list_threads_empty(client):
    response = client.get("/api/threads/")
    assert response.status_code == 200
    assert response.json() == []


def test_create_and_list_threads(client):
    response = client.post(
        "/api/threads/", json={"title": "Pirates", "bot_name": "Captain", "rules": "Arr"}
    )
    assert response.status_code == 200
    created = response.json()
    assert created["title"] == "Pirates"
    assert created["config"]["bot_name"] == "Captain"
    assert created["config"]["user_name"] == "User"

    _seed_thread("Other")
    titles = {t["title"] for t in client.get("/api/threads/").json()}
    assert titles == {"Pirates", "Other"}


def test_get_thread(client):
    tid = _seed_thread("My Chat", messages=3)
    response = client.get(f"/api/threads/{tid}")
    assert response.status_code == 200
    data = response.json()
    assert data["title"] == "My Chat"
    assert data["message_count"] == 3
    assert data["summary_state"]["mode"] == "normal"


def test_get_thread_not_found(client):
    assert client.get("/api/threads/nope").status_code == 404
    assert client.patch("/api/threads/nope", json={"title": "x"}).status_code == 404
    assert client.get("/api/threads/nope/messages").status_code == 404
    assert client.post("/api/threads/nope/messages", json={"content": "hi"}).status_code == 404


def test_update_thread(client):
    tid = _seed_thread("Before")
    response = client.patch(f"/api/threads/{tid}", json={"title": "After", "rules": "Be brief"})
    assert response.status_code == 200
    data = response.json()
    assert data["title"] == "After"
    assert data["config"]["rules"] == "Be brief"
    assert data["config"]["bot_name"] == "Assistant"


def test_delete_thread(client):
    tid = _seed_thread("To Delete", messages=2)
    response = client.delete(f"/api/threads/{tid}")
    assert response.status_code == 200
    assert response.json()["status"] == "deleted"

    assert client.get(f"/api/threads/{tid}").status_code == 404
    assert LogStore(test_engine).count(tid) == 0
    assert client.delete(f"/api/threads/{tid}").status_code == 404


def test_message_pages(client):
    tid = _seed_thread("Paged", messages=12)

    first = client.get(f"/api/threads/{tid}/messages", params={"page_size": 5}).json()
    assert [m["sequence"] for m in first["messages"]] == [8, 9, 10, 11, 12]
    assert first["has_more"] is True
    assert first["cursor"] == 8

    older = client.get(
        f"/api/threads/{tid}/messages", params={"page_size": 5, "before": first["cursor"]}
    ).json()
    assert [m["sequence"] for m in older["messages"]] == [3, 4, 5, 6, 7]

    last = client.get(
        f"/api/threads/{tid}/messages", params={"page_size": 5, "before": older["cursor"]}
    ).json()
    assert [m["sequence"] for m in last["messages"]] == [1, 2]
    assert last["has_more"] is False


def test_submit_then_flush(client, provider):
    tid = _seed_thread("Batched")

    for text in ("one", "two"):
        response = client.post(f"/api/threads/{tid}/messages", json={"content": text})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "queued"
        assert data["message"]["role"] == "user"
        assert data["message"]["is_delivered"] is None
    assert data["pending"] == 2

    response = client.post(f"/api/threads/{tid}/flush")
    assert response.json()["status"] == "flushed"
    assert len(response.json()["message_ids"]) == 2
    assert provider.prompts == ["User: one\ntwo"]

    messages = client.get(f"/api/threads/{tid}/messages").json()["messages"]
    assert sorted(m["content"] for m in messages) == ["Reply number 1.", "one", "two"]
    assert all(m["is_delivered"] for m in messages)

    assert client.post(f"/api/threads/{tid}/flush").json()["status"] == "empty"


def test_submit_rejects_empty_content(client):
    tid = _seed_thread("Empty")
    response = client.post(f"/api/threads/{tid}/messages", json={"content": "   "})
    assert response.status_code == 422


def test_repair_endpoint(client):
    tid = _seed_thread("Skewed")
    log = LogStore(test_engine)
    log.append(tid, make_message("a1", ASSISTANT, BASE_MS + 3_000, thread_id=tid))
    log.append(tid, make_message("u1", USER, BASE_MS + 6_000, thread_id=tid))

    response = client.post(f"/api/threads/{tid}/repair")
    assert response.json() == {"renumbered": 2, "duplicates_removed": 0}
    assert client.post(f"/api/threads/{tid}/repair").json()["renumbered"] == 0
    assert log.get("u1").sequence == 1


def test_summaries_and_context(client):
    tid = _seed_thread("Summed", messages=2, rules="Stay calm", bot_name="Nova")
    with Session(test_engine) as session:
        session.add(Summary(thread_id=tid, summary="They said hello.", sequence=1))
        session.commit()

    summaries = client.get(f"/api/threads/{tid}/summaries").json()
    assert [s["summary"] for s in summaries] == ["They said hello."]

    data = client.get(f"/api/threads/{tid}/context").json()
    assert data["context"].startswith("Rules:\nStay calm\n\nSummaries:\n- They said hello.")
    assert f"Nova: assistant says {tid}-m2" in data["context"]
    assert data["words"] == len(data["context"].split())
