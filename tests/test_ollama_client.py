import pytest
import requests
import urllib3

import ollama_gateway.clients.ollama_client as oc
from ollama_gateway.exceptions import (
    InternalError,
    ModelNotFound,
    RequestTimeout,
    ServiceUnavailable,
)
from ollama_gateway.models.message import ConversationMessage
from ollama_gateway.streaming import progressive_lines


class DummyResponse:
    def __init__(self, status_code=200, json_data=None, lines=()):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}
        self._lines = list(lines)
        self.text = str(self._json)
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"Status {self.status_code}", response=self)

    def json(self):
        return self._json

    def iter_lines(self):
        yield from self._lines

    def close(self):
        self.closed = True


class Recorder:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@pytest.fixture
def client():
    return oc.OllamaClient("http://ollama:11434/", keep_alive="60m")


def test_list_loaded(monkeypatch, client):
    get = Recorder(DummyResponse(json_data={"models": [
        {"name": "llama3.1:8b", "size": 10, "size_vram": 8, "digest": "abc", "details": {"family": "llama"}},
    ]}))
    monkeypatch.setattr(oc.requests, "get", get)
    loaded = client.list_loaded(timeout=10)
    assert get.calls[0][0] == "http://ollama:11434/api/ps"
    assert get.calls[0][1]["timeout"] == 10
    assert loaded[0].to_api_format() == {
        "name": "llama3.1:8b",
        "size": 10,
        "sizeVram": 8,
        "digest": "abc",
        "details": {"family": "llama"},
    }


def test_list_loaded_empty(monkeypatch, client):
    monkeypatch.setattr(oc.requests, "get", Recorder(DummyResponse(json_data={"models": None})))
    assert client.list_loaded(timeout=10) == []


def test_unload_sends_zero_keep_alive(monkeypatch, client):
    post = Recorder(DummyResponse())
    monkeypatch.setattr(oc.requests, "post", post)
    client.unload("llama3.1:8b", timeout=30)
    url, kwargs = post.calls[0]
    assert url == "http://ollama:11434/api/generate"
    assert kwargs["json"] == {"model": "llama3.1:8b", "prompt": "", "stream": False, "keep_alive": 0}
    assert post.response.closed


def test_warm_requests_one_token(monkeypatch, client):
    post = Recorder(DummyResponse())
    monkeypatch.setattr(oc.requests, "post", post)
    client.warm("llama3.1:8b", timeout=60)
    payload = post.calls[0][1]["json"]
    assert payload["options"] == {"num_predict": 1}
    assert payload["keep_alive"] == "60m"
    assert post.calls[0][1]["timeout"] == 60


def test_chat_payload(monkeypatch, client):
    post = Recorder(DummyResponse(json_data={"message": {"role": "assistant", "content": "ok"}}))
    monkeypatch.setattr(oc.requests, "post", post)
    messages = [ConversationMessage("user", "hi"), ConversationMessage("user", "this?", ["aGk="])]
    body = client.chat("llava:7b", messages, {"num_predict": 500}, timeout=120)
    assert body["message"]["content"] == "ok"
    url, kwargs = post.calls[0]
    assert url == "http://ollama:11434/api/chat"
    assert kwargs["timeout"] == 120
    assert kwargs["json"]["keep_alive"] == "60m"
    assert kwargs["json"]["options"] == {"num_predict": 500}
    assert kwargs["json"]["messages"] == [
        {"role": "user", "content": "hi"},
        {"role": "user", "content": "this?", "images": ["aGk="]},
    ]


def test_generate_payload_without_images(monkeypatch, client):
    post = Recorder(DummyResponse(json_data={"response": "ok"}))
    monkeypatch.setattr(oc.requests, "post", post)
    client.generate("llama3.1:8b", "hi", [], {}, timeout=120)
    assert "images" not in post.calls[0][1]["json"]


def test_stream_chat(monkeypatch, client):
    response = DummyResponse(lines=[b'{"done": false}', b'{"done": true}'])
    post = Recorder(response)
    monkeypatch.setattr(oc.requests, "post", post)
    stream = client.stream_chat("llama3.1:8b", [ConversationMessage("user", "hi")], {}, timeout=120)
    assert post.calls[0][1]["stream"] is True
    assert list(stream.iter_lines()) == [b'{"done": false}', b'{"done": true}']
    stream.close()
    assert response.closed


def test_connection_error_is_service_unavailable(monkeypatch, client):
    monkeypatch.setattr(oc.requests, "post", Recorder(requests.exceptions.ConnectionError("refused")))
    with pytest.raises(ServiceUnavailable) as excinfo:
        client.chat("llama3.1:8b", [], {}, timeout=1)
    assert "http://ollama:11434" in excinfo.value.detail


def test_timeout_is_request_timeout(monkeypatch, client):
    monkeypatch.setattr(oc.requests, "post", Recorder(requests.exceptions.ReadTimeout("slow")))
    with pytest.raises(RequestTimeout):
        client.chat("llama3.1:8b", [], {}, timeout=1)


def test_404_is_model_not_found(monkeypatch, client):
    monkeypatch.setattr(oc.requests, "post", Recorder(DummyResponse(404, {"error": "model not found"})))
    with pytest.raises(ModelNotFound) as excinfo:
        client.chat("llama3.1:8b", [], {}, timeout=1)
    assert excinfo.value.status_code == 404
    assert "llama3.1:8b" in excinfo.value.detail


def test_other_http_error_is_internal(monkeypatch, client):
    monkeypatch.setattr(oc.requests, "post", Recorder(DummyResponse(500, {"error": "out of memory"})))
    with pytest.raises(InternalError) as excinfo:
        client.generate("llama3.1:8b", "hi", [], {}, timeout=1)
    assert "out of memory" in excinfo.value.detail


def test_stream_read_failure_is_mapped(monkeypatch, client):
    class BrokenResponse(DummyResponse):
        def iter_lines(self):
            yield b'{"done": false}'
            raise requests.exceptions.ChunkedEncodingError("connection dropped")

    monkeypatch.setattr(oc.requests, "post", Recorder(BrokenResponse()))
    stream = client.stream_chat("llama3.1:8b", [], {}, timeout=1)
    lines = stream.iter_lines()
    assert next(lines) == b'{"done": false}'
    with pytest.raises(InternalError):
        next(lines)


def test_stalled_stream_read_is_request_timeout(monkeypatch, client):
    class StalledResponse(DummyResponse):
        def iter_lines(self):
            yield b'{"message": {"content": "Hel"}, "done": false}'
            stall = urllib3.exceptions.ReadTimeoutError(None, "http://ollama:11434/api/chat", "Read timed out.")
            raise requests.exceptions.ConnectionError(stall)

    monkeypatch.setattr(oc.requests, "post", Recorder(StalledResponse()))
    stream = client.stream_chat("llama3.1:8b", [], {}, timeout=1)
    lines = stream.iter_lines()
    next(lines)
    with pytest.raises(RequestTimeout):
        next(lines)

    stream = client.stream_chat("llama3.1:8b", [], {}, timeout=1)
    output = list(progressive_lines(stream, chunk_size=100))
    assert output[-1].startswith("ERROR: Request timeout")
    assert "Could not connect" not in "".join(output)
