"""Tests for the HTTP API with in-memory services."""

import json
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from doc_search_server import server
from doc_search_server.rag.answers import AnswerSynthesizer
from doc_search_server.rag.conversations import ChatService
from doc_search_server.rag.search import SearchEngine

from conftest import FakeCompletionClient

ANSWER_REPLY = json.dumps(
    {"answer": "Nothing relevant was found.", "confidence": 0.2, "sources": []}
)


@pytest.fixture
def services(store, blob_store, embedder, make_pipeline):
    def _install(with_chat=True):
        search_engine = SearchEngine(store, embedder)
        chat_service = None
        if with_chat:
            chat_service = ChatService(
                store, search_engine, AnswerSynthesizer(FakeCompletionClient(ANSWER_REPLY))
            )
        installed = server.Services(
            store=store,
            blob_store=blob_store,
            pipeline=make_pipeline(),
            search_engine=search_engine,
            chat_service=chat_service,
        )
        server.set_services(installed)
        return installed

    yield _install
    server.set_services(None)


@pytest.fixture
def client(services):
    services()
    return TestClient(server.app)


def upload(client, user_id, *files):
    return client.post(
        "/api/v1/documents",
        data={"user_id": str(user_id)},
        files=[("files", f) for f in files],
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "checks": {}}

    def test_ready(self, client):
        response = client.get("/ready")
        assert response.json() == {"status": "healthy", "checks": {"database": True}}


class TestSessions:
    def test_create_session_is_idempotent(self, client):
        first = client.post("/api/v1/users/session", json={"session_id": "browser-1"})
        second = client.post("/api/v1/users/session", json={"session_id": "browser-1"})

        assert first.status_code == 200
        body = first.json()
        assert body["success"] is True
        assert "timestamp" in body
        assert body["data"]["id"] == second.json()["data"]["id"]

    def test_missing_session_id(self, client):
        response = client.post("/api/v1/users/session", json={})
        assert response.status_code == 422
        assert response.json()["success"] is False


class TestDocuments:
    def test_upload_and_fetch(self, client, user):
        response = upload(client, user.id, ("notes.txt", b"hello world", "text/plain"))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["count"] == 1
        document = data["documents"][0]
        assert document["original_filename"] == "notes.txt"
        assert document["status"] == "uploaded"

        fetched = client.get(f"/api/v1/documents/{document['id']}")
        assert fetched.json()["data"]["id"] == document["id"]

        listed = client.get("/api/v1/documents", params={"user_id": str(user.id)})
        assert listed.json()["data"]["count"] == 1

    def test_upload_without_user(self, client):
        response = client.post(
            "/api/v1/documents", files=[("files", ("a.txt", b"abc", "text/plain"))]
        )
        assert response.status_code == 400
        assert response.json()["error"] == "User ID is required"

    def test_upload_without_files(self, client, user):
        response = client.post("/api/v1/documents", data={"user_id": str(user.id)})
        assert response.status_code == 400
        assert response.json()["error"] == "No files provided"

    def test_upload_for_unknown_user(self, client):
        response = upload(client, uuid4(), ("notes.txt", b"hello world", "text/plain"))
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert "not found" in body["error"]

    def test_served_file(self, client, user):
        response = upload(client, user.id, ("notes.txt", b"hello world", "text/plain"))
        key = response.json()["data"]["documents"][0]["filename"]

        served = client.get(f"/files/{key}")
        assert served.status_code == 200
        assert served.content == b"hello world"

    def test_missing_file(self, client):
        response = client.get("/files/nope.txt")
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_missing_document(self, client):
        response = client.get(f"/api/v1/documents/{uuid4()}")
        assert response.status_code == 404
        assert "not found" in response.json()["error"]

    def test_delete(self, client, user, store):
        response = upload(client, user.id, ("notes.txt", b"hello world", "text/plain"))
        document_id = response.json()["data"]["documents"][0]["id"]

        deleted = client.delete(f"/api/v1/documents/{document_id}")
        assert deleted.status_code == 200
        assert deleted.json()["data"]["deleted"] is True
        assert client.get(f"/api/v1/documents/{document_id}").status_code == 404


class TestSearchAndChat:
    def test_search(self, client, user):
        response = client.post(
            "/api/v1/search",
            json={"query": "anything at all", "user_id": str(user.id)},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["results"] == []
        assert data["search_path"] == "enhanced"

    def test_short_query_rejected(self, client, user):
        response = client.post("/api/v1/search", json={"query": "ab", "user_id": str(user.id)})
        assert response.status_code == 422
        assert response.json()["success"] is False

    def test_search_failure_is_bad_gateway(self, client, user, store):
        store.fail_enhanced = True
        store.fail_basic = True
        response = client.post(
            "/api/v1/search", json={"query": "anything at all", "user_id": str(user.id)}
        )
        assert response.status_code == 502

    def test_chat_and_history(self, client, user):
        response = client.post(
            "/api/v1/chat", json={"message": "what do my files say", "user_id": str(user.id)}
        )
        assert response.status_code == 200
        turn = response.json()["data"]
        assert turn["answer"]["answer"] == "Nothing relevant was found."

        history = client.get("/api/v1/conversations", params={"user_id": str(user.id)})
        conversations = history.json()["data"]["conversations"]
        assert len(conversations) == 1
        assert conversations[0]["id"] == turn["conversation_id"]
        assert len(conversations[0]["messages"]) == 2

    def test_chat_unknown_conversation(self, client, user):
        response = client.post(
            "/api/v1/chat",
            json={
                "message": "what do my files say",
                "user_id": str(user.id),
                "conversation_id": str(uuid4()),
            },
        )
        assert response.status_code == 404

    def test_chat_not_configured(self, services, user):
        services(with_chat=False)
        client = TestClient(server.app)
        response = client.post(
            "/api/v1/chat", json={"message": "hello there", "user_id": str(user.id)}
        )
        assert response.status_code == 503
        assert response.json()["error"] == "Answer generation is not configured"


class TestAdmin:
    def test_storage_check(self, client):
        response = client.get("/api/v1/admin/storage-check")
        data = response.json()["data"]
        assert data["ok"] is True
        assert data["public_url"] == "http://testserver/files/.storage-check"
