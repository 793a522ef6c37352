import json

import pytest

from ollama_gateway.clients.base import EngineClient, LoadedModel
from ollama_gateway.exceptions import ServiceUnavailable
from ollama_gateway.models.registry import ModelDescriptor, ModelRegistry

VISION_MODEL = "llama3.2-vision:11b"
TEXT_MODEL = "llama3.1:8b"
OTHER_MODEL = "qwen2.5:14b"


def ndjson(*objects):
    return [json.dumps(o).encode() for o in objects]


def chat_lines(*fragments, done=True):
    lines = ndjson(*({"message": {"role": "assistant", "content": f}, "done": False} for f in fragments))
    if done:
        lines += ndjson({"message": {"role": "assistant", "content": ""}, "done": True})
    return lines


class FakeStream:
    def __init__(self, lines, error=None):
        self.lines = list(lines)
        self.error = error
        self.closed = False

    def iter_lines(self):
        for line in self.lines:
            yield line
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True


class FakeEngine(EngineClient):
    """Records every call; behaviour is driven by plain attributes."""

    def __init__(self, loaded=(), reply="Hello there"):
        super().__init__("http://fake-ollama:11434")
        self.loaded = list(loaded)
        self.reply = reply
        self.calls = []
        self.fail_unload = set()
        self.warm_error = None
        self.call_error = None
        self.stream_lines = chat_lines("Hello", " there")
        self.stream_error = None
        self.streams = []

    def kinds(self):
        return [call[0] for call in self.calls]

    def list_loaded(self, timeout):
        self.calls.append(("list_loaded",))
        return [LoadedModel(name) for name in self.loaded]

    def unload(self, model, timeout):
        self.calls.append(("unload", model))
        if model in self.fail_unload:
            raise ServiceUnavailable(f"could not unload {model}")
        self.loaded.remove(model)

    def warm(self, model, timeout):
        self.calls.append(("warm", model, timeout))
        if self.warm_error is not None:
            raise self.warm_error
        if model not in self.loaded:
            self.loaded.append(model)

    def chat(self, model, messages, options, timeout):
        self.calls.append(("chat", model, list(messages), options, timeout))
        if self.call_error is not None:
            raise self.call_error
        return {"model": model, "message": {"role": "assistant", "content": self.reply}, "done": True}

    def stream_chat(self, model, messages, options, timeout):
        self.calls.append(("stream_chat", model, list(messages), options, timeout))
        if self.call_error is not None:
            raise self.call_error
        stream = FakeStream(self.stream_lines, self.stream_error)
        self.streams.append(stream)
        return stream

    def generate(self, model, prompt, images, options, timeout):
        self.calls.append(("generate", model, prompt, list(images), options, timeout))
        if self.call_error is not None:
            raise self.call_error
        return {"model": model, "response": self.reply, "done": True}

    def stream_generate(self, model, prompt, images, options, timeout):
        self.calls.append(("stream_generate", model, prompt, list(images), options, timeout))
        if self.call_error is not None:
            raise self.call_error
        stream = FakeStream(self.stream_lines, self.stream_error)
        self.streams.append(stream)
        return stream


@pytest.fixture
def registry():
    return ModelRegistry([
        ModelDescriptor(VISION_MODEL, "Llama 3.2 Vision 11B", "Vision and text", supports_images=True),
        ModelDescriptor(TEXT_MODEL, "Llama 3.1 8B", "Text only"),
        ModelDescriptor(OTHER_MODEL, "Qwen 2.5 14B", "Text only"),
    ])


@pytest.fixture
def engine():
    return FakeEngine(loaded=[VISION_MODEL])


@pytest.fixture
def models_yaml(tmp_path):
    path = tmp_path / "models.yaml"
    path.write_text(
        "models:\n"
        f"  {VISION_MODEL}:\n"
        "    name: Llama 3.2 Vision 11B\n"
        "    description: Vision and text\n"
        "    supports_images: true\n"
        f"  {TEXT_MODEL}:\n"
        "    name: Llama 3.1 8B\n"
        "    description: Text only\n"
    )
    return path
