import json

import pytest
from fastapi.testclient import TestClient

from conftest import TEXT_MODEL, VISION_MODEL, FakeEngine
from ollama_gateway.exceptions import ServiceUnavailable
from ollama_gateway.service.api import GatewayService, create_app
from ollama_gateway.utils.config import Config


@pytest.fixture
def config(models_yaml):
    return Config(MODELS_CONFIG_PATH=str(models_yaml), MAX_WORKERS=2)


@pytest.fixture
def engine():
    return FakeEngine(loaded=[VISION_MODEL])


@pytest.fixture
def client(config, engine):
    service = GatewayService(config, engine=engine)
    with TestClient(create_app(service)) as test_client:
        yield test_client


def chat_body(model=VISION_MODEL, content="hi", **extra):
    return {"model": model, "messages": [{"role": "user", "content": content}], **extra}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "T" in data["timestamp"]


def test_list_models_from_yaml(client):
    data = client.get("/api/models").json()
    assert data["success"] is True
    assert data["totalAvailable"] == 2
    vision = next(m for m in data["models"] if m["id"] == VISION_MODEL)
    assert vision == {
        "id": VISION_MODEL,
        "name": "Llama 3.2 Vision 11B",
        "description": "Vision and text",
        "supportsImages": True,
    }


def test_chat(client, engine):
    response = client.post("/api/chat", json=chat_body(content="Explain in detail the history of Rome"))
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": {"role": "assistant", "content": "Hello there"},
        "model": VISION_MODEL,
        "modelName": "Llama 3.2 Vision 11B",
        "complexity": "moderate",
        "maxTokens": 1200,
    }
    options = engine.calls[-1][3]
    assert options["num_thread"] == 10
    assert options["use_mlock"] is True


def test_chat_unknown_model_is_400_without_engine_call(client, engine):
    response = client.post("/api/chat", json=chat_body(model="mystery:7b"))
    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert data["code"] == "INVALID_MODEL"
    assert VISION_MODEL in data["availableModels"]
    assert engine.calls == []


def test_chat_images_for_text_model(client, engine):
    body = {"model": TEXT_MODEL, "messages": [{"role": "user", "content": "what?", "images": ["aGk="]}]}
    response = client.post("/api/chat", json=body)
    assert response.status_code == 400
    assert response.json()["code"] == "UNSUPPORTED_MEDIA"
    assert response.json()["modelSupportsImages"] is False
    assert engine.calls == []


def test_chat_without_messages(client, engine):
    response = client.post("/api/chat", json={"model": VISION_MODEL, "messages": []})
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"
    assert engine.calls == []


def test_malformed_body_is_invalid_request(client):
    response = client.post("/api/chat", json={"model": VISION_MODEL, "messages": "hello"})
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"


def test_engine_unreachable_is_503(client, engine):
    engine.call_error = ServiceUnavailable("Could not connect to Ollama server")
    response = client.post("/api/chat", json=chat_body())
    assert response.status_code == 503
    assert response.json()["code"] == "SERVICE_UNAVAILABLE"


def test_chat_stream(client, engine):
    response = client.post("/api/chat", json=chat_body(stream=True))
    assert response.status_code == 200
    assert response.headers["x-query-complexity"] == "simple"
    assert response.headers["x-max-tokens"] == "500"
    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.content == b"".join(line + b"\n" for line in engine.stream_lines)


def test_generate(client, engine):
    response = client.post("/api/generate", json={"model": VISION_MODEL, "prompt": "hi"})
    assert response.status_code == 200
    data = response.json()
    assert data["response"] == "Hello there"
    assert data["complexity"] == "simple"
    assert engine.calls[-1][0] == "generate"


def test_resume(client, engine):
    body = chat_body(partial_response="Once upon a time")
    response = client.post("/api/chat/resume", json=body)
    assert response.status_code == 200
    data = response.json()
    assert data["mode"] == "resumption"
    assert data["model"] == VISION_MODEL
    assert engine.calls[-1][4] == 300


def test_resume_stream_header(client):
    body = chat_body(partial_response="Once upon a time", stream=True)
    response = client.post("/api/chat/resume", json=body)
    assert response.headers["x-response-mode"] == "resumption"
    assert response.headers["x-query-complexity"] == "complex"


def test_progressive(client):
    response = client.post("/api/chat/progressive", json=chat_body(chunk_size=4))
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["x-progressive-mode"] == "true"
    assert response.headers["x-chunk-size"] == "4"
    assert response.text == "CHUNK_0: Hell\n\nCHUNK_1: o th\n\nCHUNK_2: ere\n\nDONE\n"


def test_progressive_default_chunk_size(client):
    response = client.post("/api/chat/progressive", json=chat_body())
    assert response.headers["x-chunk-size"] == "500"
    assert response.text == "CHUNK_0: Hello there\n\nDONE\n"


def test_progressive_rejects_zero_chunk_size(client, engine):
    response = client.post("/api/chat/progressive", json=chat_body(chunk_size=0))
    assert response.status_code == 400
    assert engine.calls == []


def test_loaded_models(client, engine):
    data = client.get("/api/models/loaded").json()
    assert data["count"] == 1
    assert data["loadedModels"][0]["name"] == VISION_MODEL


def test_switch_model(client, engine):
    response = client.post("/api/models/switch", json={"model": TEXT_MODEL})
    data = response.json()
    assert data["activeModel"] == TEXT_MODEL
    assert data["unloadedCount"] == 1
    assert engine.loaded == [TEXT_MODEL]


def test_unload_all(client, engine):
    data = client.post("/api/models/unload").json()
    assert data["unloadedCount"] == 1
    assert engine.loaded == []


def test_preload_unknown_model(client, engine):
    response = client.post("/api/models/preload", json={"model": "mystery:7b"})
    assert response.status_code == 400
    assert engine.calls == []


def test_preload(client, engine):
    response = client.post("/api/models/preload", json={"model": TEXT_MODEL})
    assert response.json()["success"] is True
    assert ("warm", TEXT_MODEL, 60.0) in engine.calls


def test_oversized_body_is_413(models_yaml, engine):
    config = Config(MODELS_CONFIG_PATH=str(models_yaml), MAX_BODY_BYTES=100)
    with TestClient(create_app(GatewayService(config, engine=engine))) as client:
        response = client.post("/api/chat", json=chat_body(content="x" * 500))
    assert response.status_code == 413
    assert engine.calls == []


def test_chunked_body_over_cap_is_413(models_yaml, engine):
    config = Config(MODELS_CONFIG_PATH=str(models_yaml), MAX_BODY_BYTES=100)
    payload = json.dumps(chat_body(content="x" * 500)).encode()

    def chunks():
        for start in range(0, len(payload), 64):
            yield payload[start:start + 64]

    with TestClient(create_app(GatewayService(config, engine=engine))) as client:
        response = client.post("/api/chat", content=chunks(), headers={"Content-Type": "application/json"})
    assert response.status_code == 413
    assert response.json()["code"] == "PAYLOAD_TOO_LARGE"
    assert engine.calls == []


def test_chunked_body_under_cap_is_served(client, engine):
    payload = json.dumps(chat_body()).encode()

    def chunks():
        yield payload[:10]
        yield payload[10:]

    response = client.post("/api/chat", content=chunks(), headers={"Content-Type": "application/json"})
    assert response.status_code == 200
    assert engine.kinds()[-1] == "chat"


def test_security_headers(client):
    headers = client.get("/health").headers
    assert headers["x-content-type-options"] == "nosniff"
    assert headers["x-frame-options"] == "SAMEORIGIN"
    assert headers["referrer-policy"] == "no-referrer"
    assert headers["strict-transport-security"].startswith("max-age=")
    assert "content-security-policy" not in headers


def test_stream_open_failure_is_json_error(client, engine):
    engine.call_error = ServiceUnavailable("Could not connect to Ollama server")
    response = client.post("/api/chat", json=chat_body(stream=True))
    assert response.status_code == 503
    assert response.json()["code"] == "SERVICE_UNAVAILABLE"


def test_warmup_on_startup(models_yaml):
    engine = FakeEngine(loaded=[])
    config = Config(
        MODELS_CONFIG_PATH=str(models_yaml),
        WARMUP_ON_STARTUP=True,
        DEFAULT_MODEL=VISION_MODEL,
    )
    with TestClient(create_app(GatewayService(config, engine=engine))):
        assert engine.loaded == [VISION_MODEL]
