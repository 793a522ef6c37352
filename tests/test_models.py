import pytest

from ollama_gateway.exceptions import InvalidModel, InvalidRequest
from ollama_gateway.models.message import ConversationMessage
from ollama_gateway.models.registry import ModelDescriptor, ModelRegistry


def test_message_api_format_omits_empty_images():
    assert ConversationMessage("user", "hi").to_api_format() == {"role": "user", "content": "hi"}
    with_image = ConversationMessage("user", "hi", ["aGk="]).to_api_format()
    assert with_image["images"] == ["aGk="]


def test_message_from_dict_with_text_parts():
    msg = ConversationMessage.from_dict({
        "role": "user",
        "content": [{"type": "text", "text": "hello"}, {"type": "image_url"}, {"type": "text", "text": "world"}],
    })
    assert msg.content == "hello world"
    assert not msg.has_images


def test_message_rejects_unknown_role():
    with pytest.raises(InvalidRequest):
        ConversationMessage("tool", "x")


def test_registry_require():
    registry = ModelRegistry([ModelDescriptor("a:1b", "A")])
    assert registry.require("a:1b").display_name == "A"
    with pytest.raises(InvalidModel) as excinfo:
        registry.require("b:1b")
    assert excinfo.value.to_dict() == {
        "success": False,
        "error": "Invalid or unsupported model: 'b:1b'",
        "code": "INVALID_MODEL",
        "availableModels": ["a:1b"],
    }


def test_registry_missing_model_id():
    with pytest.raises(InvalidModel):
        ModelRegistry().require(None)


def test_registry_keeps_first_duplicate():
    registry = ModelRegistry([ModelDescriptor("a:1b", "First"), ModelDescriptor("a:1b", "Second")])
    assert len(registry) == 1
    assert registry.require("a:1b").display_name == "First"
