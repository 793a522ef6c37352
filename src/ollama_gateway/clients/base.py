from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Protocol

from ..models.message import ConversationMessage


@dataclass(frozen=True)
class LoadedModel:
    """One entry of the engine-reported residency set."""
    name: str
    size: int = 0
    size_vram: int = 0
    digest: str | None = None
    details: dict = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_api(cls, data: dict) -> "LoadedModel":
        return cls(
            name=data.get("name") or data.get("model", ""),
            size=data.get("size", 0) or 0,
            size_vram=data.get("size_vram", 0) or 0,
            digest=data.get("digest"),
            details=data.get("details") or {},
        )

    def to_api_format(self) -> dict:
        return {
            "name": self.name,
            "size": self.size,
            "sizeVram": self.size_vram,
            "digest": self.digest,
            "details": self.details,
        }


class EngineStream(Protocol):
    """An open newline-delimited JSON response from the engine."""

    def iter_lines(self) -> Iterator[bytes]: ...

    def close(self) -> None: ...


class EngineClient(ABC):
    """The operations the gateway needs from an inference engine.

    Implementations translate transport failures into ``GatewayError``
    subclasses; callers never see transport exceptions.
    """

    def __init__(self, base_url: str, keep_alive: str | int = "60m"):
        self.base_url = base_url.rstrip("/")
        self.keep_alive = keep_alive

    @abstractmethod
    def list_loaded(self, timeout: float) -> List[LoadedModel]:
        """Return the models the engine currently holds in memory."""
        pass

    @abstractmethod
    def unload(self, model: str, timeout: float) -> None:
        """Evict ``model`` immediately."""
        pass

    @abstractmethod
    def warm(self, model: str, timeout: float) -> None:
        """Force ``model`` resident with a near-zero generation."""
        pass

    @abstractmethod
    def chat(self, model: str, messages: List[ConversationMessage], options: dict[str, Any], timeout: float) -> dict:
        """Non-streaming chat; returns the engine's JSON body."""
        pass

    @abstractmethod
    def stream_chat(self, model: str, messages: List[ConversationMessage], options: dict[str, Any], timeout: float) -> EngineStream:
        """Open a streaming chat; errors before the first byte are raised here."""
        pass

    @abstractmethod
    def generate(self, model: str, prompt: str, images: List[str], options: dict[str, Any], timeout: float) -> dict:
        """Non-streaming generate; returns the engine's JSON body."""
        pass

    @abstractmethod
    def stream_generate(self, model: str, prompt: str, images: List[str], options: dict[str, Any], timeout: float) -> EngineStream:
        """Open a streaming generate."""
        pass
