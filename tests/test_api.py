import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeLLM
from conversational_engine.api.router import create_app
from conversational_engine.config import EngineSettings, ModelConfig
from conversational_engine.controller import ConversationalEngineController
from conversational_engine.conversation_database.abort import InMemoryAbortRegistry
from conversational_engine.conversation_database.in_memory import InMemoryConversationDatabase
from conversational_engine.llms.base import LLMMessage


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM(chunks=["Hello", " there"], responses=[LLMMessage(content="👋 Greeting")])


@pytest.fixture
def client(llm: FakeLLM):
    controller = ConversationalEngineController(
        conversation_db=InMemoryConversationDatabase(),
        abort_registry=InMemoryAbortRegistry(),
        settings=EngineSettings(models=[ModelConfig(id="test-model")]),
        llm_factory=lambda model: llm,
    )
    with TestClient(create_app(controller=controller)) as test_client:
        yield test_client


def _records(response) -> list[dict]:
    return [json.loads(line) for line in response.text.split("\n") if line.strip()]


def test_conversation_flow(client: TestClient):
    response = client.post("/conversation", json={"model": "test-model", "preprompt": "Be nice."})
    assert response.status_code == 200
    conversation_id = response.json()["id"]

    response = client.post(f"/conversation/{conversation_id}", json={"inputs": "Hi"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/jsonl")
    records = _records(response)
    assert records[0] == {"type": "status", "status": "started"}
    assert {"type": "finalAnswer", "text": "Hello there", "interrupted": False} in records
    assert {"type": "title", "title": "👋 Greeting"} in records

    conversation = client.get(f"/conversation/{conversation_id}").json()
    assert conversation["title"] == "👋 Greeting"
    assistant = conversation["messages"][-1]
    assert assistant["content"] == "Hello there"

    response = client.get(f"/conversation/{conversation_id}/prompt/{assistant['id']}")
    assert [message["content"] for message in response.json()] == ["Be nice.", "Hi", "Hello there"]

    response = client.post(f"/conversation/{conversation_id}/stop-generating")
    assert response.json() == {"success": True}

    response = client.delete(f"/conversation/{conversation_id}/message/{assistant['id']}")
    assert response.json() == {"deleted": [assistant["id"]]}


def test_errors_are_mapped_to_statuses(client: TestClient):
    assert client.post("/conversation/missing", json={"inputs": "Hi"}).status_code == 404
    assert client.post("/conversation/missing/stop-generating").status_code == 404
    assert client.post("/conversation", json={"model": "unknown"}).status_code == 400

    conversation_id = client.post("/conversation", json={"model": "test-model"}).json()["id"]
    root_id = client.get(f"/conversation/{conversation_id}").json()["root_message_id"]
    assert client.delete(f"/conversation/{conversation_id}/message/{root_id}").status_code == 400
    assert client.delete(f"/conversation/{conversation_id}/message/missing").status_code == 404
    assert client.post(f"/conversation/{conversation_id}", json={"is_retry": True}).status_code == 400
